"""Database engine, column types and ORM models."""

"""Roster ingestion core: storage models, spreadsheet parsing and change detection."""

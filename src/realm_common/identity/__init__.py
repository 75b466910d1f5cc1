"""Player identity and change-record stores."""

"""Calendar provider adapters (CalDAV and token-authenticated REST)."""

"""Task tracking backend with a session activity ledger."""

"""SQLite storage helpers for the progress ledger."""

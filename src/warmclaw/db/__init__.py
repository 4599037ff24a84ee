"""SQLite-backed message log and router state store."""

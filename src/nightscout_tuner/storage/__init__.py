"""SQLite persistence for tuning jobs."""

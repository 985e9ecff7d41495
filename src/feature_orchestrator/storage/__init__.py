"""SQLite storage plumbing shared by orchestrator repositories."""

"""Domain models for credentials, calls and upstream tasks."""

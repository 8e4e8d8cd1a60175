"""Write serialization and record persistence."""

"""Domain Event definitions.

Represents significant occurrences during an orchestrated call (attempts,
deferrals, retries, rotations) that telemetry consumers may react to.
"""

"""Infrastructure Layer: Contains concrete implementations and adapters.

Connects the orchestration core to the outside world (provider SDKs, HTTP,
the file system, configuration, the console).
"""

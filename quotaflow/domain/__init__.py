"""Domain Layer: value objects, entities, events and ports.

Free of I/O. Infrastructure adapters implement the interfaces defined here.
"""

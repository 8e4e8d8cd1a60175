"""Core Application Layer: use cases and the error taxonomy.

Connects the domain layer with the infrastructure layer through interfaces.
"""

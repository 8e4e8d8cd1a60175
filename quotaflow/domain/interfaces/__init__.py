"""Domain Interfaces (Ports):

Defines the contracts (Abstract Base Classes) that upstream adapters and
user interfaces must implement. The orchestration core depends on these
interfaces, not on concrete provider SDKs.
"""

"""API Resilience Implementations.

Contains the credential pool, the admission controller (rate limiter), error
classification, backoff, the call orchestrator and the task poller.
Bounded Context: API Resilience
"""

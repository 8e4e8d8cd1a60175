"""quotaflow: resilient outbound-call orchestration for generation providers.

Governs when, with which credential, how many times and for how long a call
to a quota-bearing upstream may be attempted, and serializes concurrent
mutations of shared records.
"""

__version__ = "0.3.0"

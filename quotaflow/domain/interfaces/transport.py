"""Interface for a single upstream invocation.

The orchestrator calls ``invoke`` once per attempt with the credential it
selected. It never looks inside ``request`` or the returned value.
"""

import abc
from typing import Any, Optional

from ..models.common import Credential, CallTarget


class Transport(abc.ABC):
    """Abstract Base Class for one-shot upstream calls."""

    @abc.abstractmethod
    async def invoke(self, credential: Credential, target: Optional[CallTarget], request: Any) -> Any:
        """Performs exactly one call attempt asynchronously.

        Args:
            credential: The secret to authenticate this attempt with.
            target: Model name or endpoint path for this attempt.
            request: Opaque provider payload.

        Returns:
            The provider response.

        Raises:
            Exception: Any failure. Retry policy is decided by the caller
                from the exception's status code and message.
        """
        pass

    async def aclose(self) -> None:
        """Releases pooled connections, if any."""
        return None

"""Interface for upstream "submit, then poll" job protocols."""

import abc
from typing import Any

from ..models.calls import TaskSnapshot
from ..models.common import Credential, CallTarget, TaskId


class AsyncTaskApi(abc.ABC):
    """Abstract Base Class for asynchronous upstream jobs.

    Both methods have the ``invoke(credential, target, request)`` shape so
    they can be passed straight to the call orchestrator.
    """

    @abc.abstractmethod
    async def submit(self, credential: Credential, target: CallTarget, payload: Any) -> TaskId:
        """Creates an upstream job and returns its opaque handle."""
        pass

    @abc.abstractmethod
    async def poll(self, credential: Credential, target: CallTarget, task_id: TaskId) -> TaskSnapshot:
        """Fetches the current status of a job.

        Args:
            credential: Must be the credential the job was submitted with.
            target: The endpoint the job was submitted to.
            task_id: Handle returned by ``submit``.
        """
        pass

    async def aclose(self) -> None:
        return None

"""Interface for presenting results to an operator.

Defines the contract for displaying output, errors, warnings and usage
statistics, allowing different UI implementations (e.g., console, web).
"""

import abc
from typing import Any

from ..models.common import UsageStats


class UserInterface(abc.ABC):
    """Abstract Base Class for operator-facing output."""

    @abc.abstractmethod
    def display_output(self, output: str, **kwargs: Any) -> None:
        """Shows a result body; ``title`` and ``markdown`` are honoured when supported."""
        pass

    @abc.abstractmethod
    def display_error(self, error_message: str, **kwargs: Any) -> None:
        pass

    @abc.abstractmethod
    def display_warning(self, warning_message: str, **kwargs: Any) -> None:
        pass

    @abc.abstractmethod
    def display_info(self, info_message: str, **kwargs: Any) -> None:
        pass

    @abc.abstractmethod
    def display_usage_stats(self, stats: UsageStats) -> None:
        """Renders per-service, per-credential health counters.

        Args:
            stats: The structure returned by ``GenerationService.usage_stats``.
        """
        pass

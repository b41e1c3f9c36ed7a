"""Lifecycle interface for background services run by the buffer app."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class Service(ABC):
    """A background worker the app starts, stops and reports on."""

    @property
    @abstractmethod
    def service_name(self) -> str:
        ...

    @property
    @abstractmethod
    def running(self) -> bool:
        ...

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @abstractmethod
    async def status(self) -> dict[str, Any]:
        """Snapshot for the ``status`` CLI command."""
        ...

    async def health_check(self) -> bool:
        return self.running

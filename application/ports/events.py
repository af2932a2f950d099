"""
Domain event publisher port.

Application services hand committed domain events to a publisher; the
composition root decides whether they run in-process or on a task queue.
"""
from __future__ import annotations

from typing import Iterable, Protocol, runtime_checkable


@runtime_checkable
class EventPublisher(Protocol):

    async def publish(self, events: Iterable[object]) -> None: ...

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from itertools import count

AGENT = "agent"
ISOLATE = "isolate"

_permit_ids = count(1)


class CoordinatorError(RuntimeError):
    """Raised on misuse of concurrency permits."""


@dataclass(slots=True)
class Permit:
    resource_class: str
    label: str = ""
    id: int = field(default_factory=lambda: next(_permit_ids))
    released: bool = False


class ConcurrencyCoordinator:
    """Bounds in-flight agent invocations and isolate operations independently.

    Each resource class is backed by its own ``asyncio.Semaphore`` so waiters are
    served first-come-first-served within a class. Permits are meant to be held for a
    single unit of work and released right after it.
    """

    def __init__(self, limits: dict[str, int]) -> None:
        if not limits:
            raise CoordinatorError("At least one resource class limit is required.")
        self.limits = {name: max(1, int(limit)) for name, limit in limits.items()}
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._in_flight = {name: 0 for name in self.limits}
        self._peak = {name: 0 for name in self.limits}

    @classmethod
    def from_config(cls, agent_permits: int, isolate_permits: int) -> ConcurrencyCoordinator:
        return cls({AGENT: agent_permits, ISOLATE: isolate_permits})

    def _semaphore(self, resource_class: str) -> asyncio.Semaphore:
        if resource_class not in self.limits:
            raise CoordinatorError(f"Unknown resource class: {resource_class}")
        # Semaphores bind to the loop that first waits on them; rebuild per loop.
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            if any(self._in_flight.values()):
                raise CoordinatorError("Permits are still held by another event loop.")
            self._loop = loop
            self._semaphores = {
                name: asyncio.Semaphore(limit) for name, limit in self.limits.items()
            }
        return self._semaphores[resource_class]

    async def acquire(self, resource_class: str, label: str = "") -> Permit:
        await self._semaphore(resource_class).acquire()
        self._in_flight[resource_class] += 1
        self._peak[resource_class] = max(
            self._peak[resource_class], self._in_flight[resource_class]
        )
        return Permit(resource_class=resource_class, label=label)

    def release(self, permit: Permit) -> None:
        if permit.released:
            raise CoordinatorError(
                f"Permit {permit.id} ({permit.resource_class}) already released."
            )
        permit.released = True
        self._in_flight[permit.resource_class] -= 1
        self._semaphore(permit.resource_class).release()

    @asynccontextmanager
    async def permit(self, resource_class: str, label: str = "") -> AsyncIterator[Permit]:
        held = await self.acquire(resource_class, label)
        try:
            yield held
        finally:
            self.release(held)

    def in_flight(self, resource_class: str) -> int:
        return self._in_flight[resource_class]

    def peak(self, resource_class: str) -> int:
        return self._peak[resource_class]

    def snapshot(self) -> dict[str, dict[str, int]]:
        return {
            name: {
                "limit": self.limits[name],
                "in_flight": self._in_flight[name],
                "peak": self._peak[name],
            }
            for name in self.limits
        }

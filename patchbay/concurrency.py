"""
ConcurrencyGuard: one write pipeline per installation, one run per key.

  InstallationQueue  FIFO, concurrency 1 per installation id. Different
                     installations run in parallel. Idle queues are pruned.
  InFlightLocks      process-wide set of idempotency keys being published.
                     A second trigger with the same key is told the work is
                     already in progress.

Both live in process memory. They assume a single active replica; the git
marker scan in the publisher is the durable check behind them.
"""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class _InstallationSlot:
    lock: asyncio.Lock
    waiting: int = 0
    running: int = 0

    @property
    def idle(self) -> bool:
        return self.waiting == 0 and self.running == 0


class InstallationQueue:
    def __init__(self):
        self._slots: dict[int, _InstallationSlot] = {}

    async def enqueue(self, installation_id: int, job: Callable[[], Awaitable[T]]) -> T:
        """Run `job` after every earlier job for this installation has finished."""
        slot = self._slots.get(installation_id)
        if slot is None:
            slot = _InstallationSlot(lock=asyncio.Lock())
            self._slots[installation_id] = slot

        slot.waiting += 1
        started = False
        logger.debug(
            f"[GUARD] Job queued for installation {installation_id} "
            f"(waiting={slot.waiting}, running={slot.running})"
        )
        try:
            async with slot.lock:
                slot.waiting -= 1
                slot.running += 1
                started = True
                try:
                    return await job()
                finally:
                    slot.running -= 1
        finally:
            if not started:
                # Cancelled while still waiting for the lock.
                slot.waiting -= 1
            self._prune(installation_id)

    def queue_size(self, installation_id: int) -> int:
        """Jobs waiting to start."""
        slot = self._slots.get(installation_id)
        return slot.waiting if slot else 0

    def pending_count(self, installation_id: int) -> int:
        """Jobs waiting plus the one running."""
        slot = self._slots.get(installation_id)
        return slot.waiting + slot.running if slot else 0

    def active_installations(self) -> list[int]:
        return list(self._slots)

    def _prune(self, installation_id: int) -> None:
        slot = self._slots.get(installation_id)
        if slot is not None and slot.idle and not slot.lock.locked():
            del self._slots[installation_id]
            logger.debug(f"[GUARD] Pruned idle queue for installation {installation_id}")


class InFlightLocks:
    def __init__(self):
        self._keys: set[str] = set()

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def try_acquire(self, key: str) -> bool:
        if key in self._keys:
            logger.info(f"[GUARD] Key already in flight: {key}")
            return False
        self._keys.add(key)
        return True

    def release(self, key: str) -> None:
        self._keys.discard(key)

    @contextmanager
    def claim(self, key: str) -> Iterator[bool]:
        """Yield whether the key was acquired; release on exit only if it was."""
        acquired = self.try_acquire(key)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)


class ConcurrencyGuard:
    def __init__(self, queue: InstallationQueue | None = None, locks: InFlightLocks | None = None):
        self.queue = queue or InstallationQueue()
        self.locks = locks or InFlightLocks()

    def try_acquire(self, key: str) -> bool:
        return self.locks.try_acquire(key)

    def release(self, key: str) -> None:
        self.locks.release(key)

    async def run_exclusive(self, installation_id: int, key: str, job: Callable[[], Awaitable[T]]) -> T:
        """
        Run `job` in the installation's queue. The caller must already hold
        `key` via try_acquire; it is released here on every exit path.
        """
        try:
            return await self.queue.enqueue(installation_id, job)
        finally:
            self.locks.release(key)

"""Reconnection supervisor owning a sync manager's connection lifetime."""

import asyncio
import logging
import random
from abc import ABC, abstractmethod

from .client import TRANSPORT_ERRORS, SyncManager

logger = logging.getLogger(__name__)


class RetryPolicy(ABC):
    """Decides how long to wait before the next connection attempt."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (0-based)."""


class FixedDelay(RetryPolicy):
    """Retry forever after the same delay."""

    def __init__(self, delay_seconds: float = 3.0):
        self.delay_seconds = delay_seconds

    def next_delay(self, attempt: int) -> float:
        return self.delay_seconds


class ExponentialBackoff(RetryPolicy):
    """Double the delay on every failed attempt up to a ceiling."""

    def __init__(
        self,
        base_seconds: float = 1.0,
        max_seconds: float = 30.0,
        jitter: bool = False,
    ):
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self.jitter = jitter

    def next_delay(self, attempt: int) -> float:
        # Cap the exponent; 2**attempt overflows float after ~1024 attempts
        delay = min(self.base_seconds * (2 ** min(attempt, 32)), self.max_seconds)
        if self.jitter:
            delay = random.uniform(0, delay)
        return delay


class ReconnectionSupervisor:
    """Keeps a sync manager connected to the relay.

    Each cycle connects, serves messages until the transport closes, then
    waits as long as the retry policy says before trying again. There is no
    retry limit: the loop runs until stopped.
    """

    def __init__(
        self,
        manager: SyncManager,
        policy: RetryPolicy | None = None,
    ):
        self._manager = manager
        self._policy = policy or FixedDelay()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._attempt = 0
        self.connections = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start supervising as a background task."""
        if self.running:
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self.run())
        logger.info(f"Reconnection supervisor started for {self._manager.relay_url}")

    async def stop(self) -> None:
        """Stop supervising and close the current connection."""
        self._stop_event.set()
        await self._manager.close()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Reconnection supervisor stopped")

    async def run(self) -> None:
        """Connect, serve, wait, repeat until stopped."""
        while not self._stop_event.is_set():
            try:
                await self._manager.connect()
            except TRANSPORT_ERRORS as e:
                logger.warning(f"Relay unreachable: {e}")
            else:
                self._attempt = 0
                self.connections += 1
                try:
                    await self._manager.serve()
                except Exception as e:
                    # Never let one bad cycle end supervision
                    logger.error(f"Relay session failed: {e}", exc_info=True)

            if self._stop_event.is_set():
                break

            delay = self._policy.next_delay(self._attempt)
            self._attempt += 1
            logger.info(f"Reconnecting in {delay:.1f}s (attempt {self._attempt})")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                break  # Stop event was set
            except asyncio.TimeoutError:
                pass

        logger.debug("Supervisor loop exited")

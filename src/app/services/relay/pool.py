"""
Relay - Session Pool

Bounded pool of pre-launched EngineSessions, used when a global proxy is
configured (every engine then routes through the same proxy, so engines are
interchangeable).

Rules:
- acquire() never waits on replenishment: it takes an idle session or launches one
- replenishment runs as a single background task toward capacity
- the idle queue never holds more than capacity sessions; surplus is disposed
- no lock is held across an await (queue ops are synchronous)
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Any

from .exceptions import EngineLaunchError
from .session import EngineSession

logger = logging.getLogger(__name__)


@dataclass
class PoolStats:
    capacity: int
    idle: int
    launched: int
    disposed: int
    replenishing: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SessionPool:
    """
    Fixed-capacity pool of EngineSessions.

    Usage:
        pool = SessionPool(capacity=3, launch=lambda: factory.launch(proxy, pooled=True))
        await pool.warm_up()

        async with pool.lease() as session:
            ...

        await pool.dispose_all()
    """

    def __init__(self, capacity: int, launch: Callable[[], Awaitable[EngineSession]]) -> None:
        if capacity < 1:
            raise ValueError("Pool capacity must be at least 1")
        self.capacity = capacity
        self._launch = launch
        self._idle: asyncio.Queue[EngineSession] = asyncio.Queue(maxsize=capacity)
        self._replenish_task: asyncio.Task | None = None
        self._pending_launches = 0
        self._launched = 0
        self._disposed = 0
        self._closed = False

    @property
    def size(self) -> int:
        """Idle sessions currently held."""
        return self._idle.qsize()

    @property
    def closed(self) -> bool:
        return self._closed

    async def acquire(self) -> EngineSession:
        """
        Take an idle session, or launch one on demand.

        Raises:
            EngineLaunchError: If an on-demand launch fails (nothing is pooled)
        """
        session = None
        while session is None:
            try:
                candidate = self._idle.get_nowait()
            except asyncio.QueueEmpty:
                break
            if candidate.alive:
                session = candidate
            else:
                logger.info(f"[POOL] Dropping dead session {candidate.session_id}")
                await self._dispose(candidate)

        self._schedule_replenish()

        if session is not None:
            logger.debug(f"[POOL] Acquired idle session {session.session_id} (idle={self.size})")
            return session

        logger.debug("[POOL] Pool empty, launching session on demand")
        session = await self._launch()
        self._launched += 1
        return session

    async def release(self, session: EngineSession) -> None:
        """Return a session for reuse; dead or surplus sessions are disposed."""
        if self._closed or not session.alive:
            await self._dispose(session)
            return

        try:
            self._idle.put_nowait(session)
        except asyncio.QueueFull:
            logger.debug(f"[POOL] Pool full, disposing surplus session {session.session_id}")
            await self._dispose(session)
            return

        logger.debug(f"[POOL] Released session {session.session_id} (idle={self.size})")

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[EngineSession]:
        session = await self.acquire()
        try:
            yield session
        finally:
            await self.release(session)

    async def warm_up(self) -> None:
        """Fill the pool to capacity (startup)."""
        self._schedule_replenish()
        if self._replenish_task is not None:
            await asyncio.shield(self._replenish_task)
        logger.info(f"[POOL] Warmed up: {self.size}/{self.capacity} sessions ready")

    async def dispose_all(self) -> None:
        """Stop replenishing and dispose every idle session (shutdown)."""
        self._closed = True

        task = self._replenish_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._replenish_task = None

        sessions = []
        while True:
            try:
                sessions.append(self._idle.get_nowait())
            except asyncio.QueueEmpty:
                break

        for session in sessions:
            await self._dispose(session)

        logger.info(f"[POOL] Disposed {len(sessions)} idle sessions")

    def stats(self) -> PoolStats:
        return PoolStats(
            capacity=self.capacity,
            idle=self.size,
            launched=self._launched,
            disposed=self._disposed,
            replenishing=self._replenish_task is not None and not self._replenish_task.done(),
        )

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------
    def _schedule_replenish(self) -> None:
        if self._closed:
            return
        if self._replenish_task is not None and not self._replenish_task.done():
            return
        if self.size >= self.capacity:
            return
        self._replenish_task = asyncio.create_task(self._replenish())

    async def _replenish(self) -> None:
        while not self._closed and self.size + self._pending_launches < self.capacity:
            self._pending_launches += 1
            try:
                session = await self._launch()
            except EngineLaunchError as e:
                logger.warning(f"[POOL] Replenish launch failed: {e}")
                return
            finally:
                self._pending_launches -= 1

            self._launched += 1
            if self._closed:
                await self._dispose(session)
                return

            try:
                self._idle.put_nowait(session)
            except asyncio.QueueFull:
                # Concurrent releases filled the pool first
                await self._dispose(session)
                return

    async def _dispose(self, session: EngineSession) -> None:
        self._disposed += 1
        await session.dispose()

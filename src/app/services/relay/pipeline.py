"""
Relay - Fetch Pipeline

Runs one FetchRequest end-to-end through a real Chrome engine:

    IDLE -> SESSION_ACQUIRED -> CONTEXT_CONFIGURED -> INTERCEPTING
         -> NAVIGATED -> RESPONSE_CAPTURED -> RELEASED
    (any state) -> FAILED

Modes:
- pooled: PROXY_URL is configured, engines come from a shared SessionPool
- ad hoc: a dedicated engine is launched for the request and stopped afterwards

Every state after SESSION_ACQUIRED closes its browsing context and releases or
disposes its engine before control returns to the caller.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum
from typing import TYPE_CHECKING, Any

from .evasion import EvasionProfile
from .exceptions import (
    NavigationTimeoutError,
    NoResponseError,
    RelayException,
    RelayInternalError,
)
from .intercept import RequestInterceptor, RewriteSpec
from .models import FetchRequest, FetchResponse
from .pool import SessionPool
from .proxy import ProxyConfig, parse_proxy, resolve_proxy
from .session import EngineSession, SessionFactory

if TYPE_CHECKING:
    from ...core.config import Settings

logger = logging.getLogger(__name__)

# Responses that never commit a document, so the frame fires no load event
_NO_DOCUMENT_STATUSES = frozenset({204, 205})


class PipelineState(str, Enum):
    IDLE = "idle"
    SESSION_ACQUIRED = "session_acquired"
    CONTEXT_CONFIGURED = "context_configured"
    INTERCEPTING = "intercepting"
    NAVIGATED = "navigated"
    RESPONSE_CAPTURED = "response_captured"
    RELEASED = "released"
    FAILED = "failed"


class PipelineRun:
    """State tracking for a single execute() call (diagnostics only)."""

    def __init__(self, request: FetchRequest) -> None:
        self.request = request
        self.state = PipelineState.IDLE
        self.history: list[PipelineState] = [PipelineState.IDLE]
        self.started_at = time.time()

    def advance(self, state: PipelineState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug(f"[RELAY:{self.request.request_id}] -> {state.value}")

    @property
    def elapsed_ms(self) -> int:
        return int((time.time() - self.started_at) * 1000)


class FetchPipeline:
    """
    Browser-backed fetch executor.

    Usage:
        pipeline = FetchPipeline.from_settings(settings)
        await pipeline.start()
        response = await pipeline.execute(FetchRequest(url="https://example.com"))
        await pipeline.shutdown()
    """

    def __init__(
        self,
        factory: SessionFactory,
        profile: EvasionProfile | None = None,
        global_proxy: ProxyConfig | None = None,
        pool_size: int = 3,
        default_timeout_ms: int = 10_000,
        pool: SessionPool | None = None,
    ) -> None:
        self.factory = factory
        self.profile = profile or EvasionProfile()
        self.global_proxy = global_proxy
        self.default_timeout_ms = default_timeout_ms

        if pool is None and global_proxy is not None:
            pool = SessionPool(
                capacity=pool_size,
                launch=lambda: self.factory.launch(self.global_proxy, pooled=True),
            )
        self.pool = pool

    @classmethod
    def from_settings(cls, settings: "Settings") -> "FetchPipeline":
        """
        Build a pipeline from application settings.

        Raises:
            RelayValidationError: If PROXY_URL is set but malformed
        """
        global_proxy = parse_proxy(settings.PROXY_URL) if settings.PROXY_URL else None
        profile = EvasionProfile(
            user_agent=settings.RELAY_USER_AGENT,
            viewport_width=settings.RELAY_VIEWPORT_WIDTH,
            viewport_height=settings.RELAY_VIEWPORT_HEIGHT,
        )
        return cls(
            factory=SessionFactory(settings),
            profile=profile,
            global_proxy=global_proxy,
            pool_size=settings.POOL_SIZE,
            default_timeout_ms=settings.RELAY_DEFAULT_TIMEOUT_MS,
        )

    @property
    def mode(self) -> str:
        return "pooled" if self.pool is not None else "ad_hoc"

    async def start(self) -> None:
        """Pre-warm the pool (pooled mode only)."""
        logger.info(f"[RELAY] Starting pipeline in {self.mode} mode")
        if self.pool is not None:
            await self.pool.warm_up()

    async def shutdown(self) -> None:
        if self.pool is not None:
            await self.pool.dispose_all()
        logger.info("[RELAY] Pipeline shut down")

    def stats(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "pool": self.pool.stats().to_dict() if self.pool is not None else None,
        }

    async def execute(self, request: FetchRequest) -> FetchResponse:
        """
        Execute a fetch through the browser engine.

        Args:
            request: Fetch description (method, url, headers, data, timeout, proxy)

        Returns:
            FetchResponse with the remote status, headers and body text

        Raises:
            RelayValidationError: Missing URL or malformed proxy (no session acquired)
            EngineLaunchError: Chrome could not be started
            NavigationError: Navigation failed (NavigationTimeoutError on timeout)
            NoResponseError: The main frame finished without a response
            RelayInternalError: Any other failure
        """
        request.validate()
        proxy, pooled = resolve_proxy(self.global_proxy, request.proxy)
        run = PipelineRun(request)

        logger.info(f"[RELAY:{request.request_id}] {request.method} {request.url} (mode={self.mode})")

        try:
            async with self._lease(proxy, pooled) as session:
                run.advance(PipelineState.SESSION_ACQUIRED)
                response = await self._run(session, request, proxy, run)
        except RelayException:
            run.advance(PipelineState.FAILED)
            raise
        except Exception as e:
            run.advance(PipelineState.FAILED)
            logger.exception(f"[RELAY:{request.request_id}] Unexpected error: {e}")
            raise RelayInternalError(url=request.url, cause=e) from e

        run.advance(PipelineState.RELEASED)
        logger.info(
            f"[RELAY:{request.request_id}] {response.status} in {run.elapsed_ms}ms ({len(response.text)} chars)"
        )
        return response

    @asynccontextmanager
    async def _lease(self, proxy: ProxyConfig | None, pooled: bool) -> AsyncIterator[EngineSession]:
        """Pooled session returned to the pool, ad hoc session stopped, on every exit path."""
        if pooled and self.pool is not None:
            async with self.pool.lease() as session:
                yield session
            return

        session = await self.factory.launch(proxy, pooled=False)
        try:
            yield session
        finally:
            await session.dispose()

    async def _run(
        self,
        session: EngineSession,
        request: FetchRequest,
        proxy: ProxyConfig | None,
        run: PipelineRun,
    ) -> FetchResponse:
        context = await session.open_context()
        interceptor = None
        try:
            user_agent = request.header("User-Agent") or self.profile.user_agent
            hints = self.profile.client_hints(user_agent)
            await context.set_user_agent(
                user_agent,
                accept_language=self.profile.accept_language,
                platform=self.profile.navigator_platform(user_agent),
                metadata=hints.to_dict() if hints else None,
            )
            await self.profile.apply(context, user_agent)
            run.advance(PipelineState.CONTEXT_CONFIGURED)

            timeout_ms = request.effective_timeout_ms(self.default_timeout_ms)

            interceptor = RequestInterceptor(
                context.tab,
                RewriteSpec.from_request(request),
                context.main_frame_id,
                proxy=proxy,
                url=request.url,
            )
            await interceptor.install()
            run.advance(PipelineState.INTERCEPTING)

            deadline = asyncio.get_running_loop().time() + timeout_ms / 1000
            try:
                response = await asyncio.wait_for(
                    self._navigate(context, interceptor, request, run),
                    timeout=timeout_ms / 1000,
                )
            except TimeoutError as e:
                raise NavigationTimeoutError(
                    f"Navigation timeout of {timeout_ms} ms exceeded",
                    url=request.url,
                    timeout_ms=timeout_ms,
                ) from e

            if response is None:
                raise NoResponseError(url=request.url)

            run.advance(PipelineState.RESPONSE_CAPTURED)
            await self._wait_for_load(interceptor, response, deadline, request)
            return response
        finally:
            if interceptor is not None:
                await interceptor.close()
            await context.close()

    async def _navigate(
        self,
        context: Any,
        interceptor: RequestInterceptor,
        request: FetchRequest,
        run: PipelineRun,
    ) -> FetchResponse | None:
        interceptor.mark_navigation_started()
        await context.navigate(request.url)
        run.advance(PipelineState.NAVIGATED)
        return await interceptor.wait_for_response()

    async def _wait_for_load(
        self,
        interceptor: RequestInterceptor,
        response: FetchResponse,
        deadline: float,
        request: FetchRequest,
    ) -> None:
        """Let the captured document reach its load event within the remaining timeout."""
        if interceptor.loaded or response.status in _NO_DOCUMENT_STATUSES:
            return
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            return
        try:
            await asyncio.wait_for(interceptor.wait_for_load(), timeout=remaining)
        except TimeoutError:
            logger.debug(f"[RELAY:{request.request_id}] Page still loading at timeout, returning captured response")

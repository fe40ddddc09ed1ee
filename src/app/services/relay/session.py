"""
Relay - Engine Sessions

One EngineSession owns one Chrome process driven over CDP by nodriver. Every
fetch opens its own BrowsingContext (an isolated CDP browser context with a
single tab), so cookies, storage and pre-load scripts never leak between
fetches that share a pooled engine.

Usage:
    factory = SessionFactory(settings)
    session = await factory.launch(proxy=None)
    context = await session.open_context()
    try:
        ...
    finally:
        await context.close()
        await session.dispose()
"""

import asyncio
import inspect
import logging
import time
import uuid
from typing import TYPE_CHECKING, Any

import nodriver as uc
from nodriver import cdp

from .exceptions import EngineLaunchError, NavigationError

if TYPE_CHECKING:
    from ...core.config import Settings
    from .proxy import ProxyConfig

logger = logging.getLogger(__name__)

# Flags every engine starts with; sandbox and proxy flags are added per launch
BASE_LAUNCH_ARGS = (
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-features=Translate,OptimizationHints",
)

# Attempts x delay spent waiting for a freshly created target to show up
_TARGET_LOOKUP_ATTEMPTS = 20
_TARGET_LOOKUP_DELAY = 0.05


class BrowsingContext:
    """
    A fresh, isolated browsing context with one tab.

    Created per fetch and closed after it, whatever the outcome.
    """

    def __init__(self, session: "EngineSession", tab: Any, context_id: Any) -> None:
        self.session = session
        self.tab = tab
        self.context_id = context_id
        self._closed = False

    @property
    def main_frame_id(self) -> str:
        # A page target's main frame shares the target id
        return str(self.tab.target.target_id)

    async def set_user_agent(
        self,
        user_agent: str,
        accept_language: str | None = None,
        platform: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Override the UA at protocol level (headers, navigator and client hints)."""
        ua_metadata = None
        if metadata:
            ua_metadata = cdp.emulation.UserAgentMetadata(
                brands=[
                    cdp.emulation.UserAgentBrandVersion(brand=b["brand"], version=b["version"])
                    for b in metadata["brands"]
                ],
                full_version_list=[
                    cdp.emulation.UserAgentBrandVersion(brand=b["brand"], version=b["version"])
                    for b in metadata["fullVersionList"]
                ],
                platform=metadata["platform"],
                platform_version=metadata["platformVersion"],
                architecture=metadata["architecture"],
                model=metadata["model"],
                mobile=metadata["mobile"],
                bitness=metadata["bitness"],
                wow64=False,
            )

        await self.tab.send(
            cdp.network.set_user_agent_override(
                user_agent=user_agent,
                accept_language=accept_language,
                platform=platform,
                user_agent_metadata=ua_metadata,
            )
        )

    async def add_init_script(self, source: str) -> None:
        """Register a script that runs before any page script of every new document."""
        await self.tab.send(cdp.page.add_script_to_evaluate_on_new_document(source=source))

    async def set_viewport(self, width: int, height: int) -> None:
        await self.tab.send(
            cdp.emulation.set_device_metrics_override(
                width=width,
                height=height,
                device_scale_factor=1,
                mobile=False,
                screen_width=width,
                screen_height=height,
            )
        )

    async def navigate(self, url: str) -> None:
        """
        Start a top-level navigation.

        Raises:
            NavigationError: If Chrome reports a navigation error (DNS, refused, ...)
        """
        result = await self.tab.send(cdp.page.navigate(url=url))
        # (frame_id, loader_id, error_text[, is_download]) depending on protocol revision
        error_text = result[2] if isinstance(result, tuple) and len(result) > 2 else None
        if error_text:
            raise NavigationError(f"Navigation failed: {error_text}", url=url, reason=error_text)

    async def close(self) -> None:
        """Close the tab and dispose the CDP browser context."""
        if self._closed:
            return
        self._closed = True

        try:
            await self.tab.close()
        except Exception as e:
            logger.debug(f"[RELAY] Error closing tab: {e}")

        try:
            await self.session.browser.connection.send(cdp.target.dispose_browser_context(self.context_id))
        except Exception as e:
            logger.warning(f"[RELAY] Error disposing browser context {self.context_id}: {e}")


class EngineSession:
    """
    One live Chrome process.

    Attributes:
        pooled: True when the session belongs to the shared pool
        created_at: Launch timestamp (diagnostics)
        launch_args: Command line flags the process was started with
    """

    def __init__(self, browser: Any, launch_args: list[str], pooled: bool = False) -> None:
        self.browser = browser
        self.launch_args = launch_args
        self.pooled = pooled
        self.created_at = time.time()
        self.session_id = uuid.uuid4().hex[:8]
        self._disposed = False

    @property
    def alive(self) -> bool:
        return not self._disposed and not self.browser.stopped

    @property
    def age_seconds(self) -> float:
        return time.time() - self.created_at

    async def open_context(self) -> BrowsingContext:
        """Create an isolated browser context with a blank tab."""
        connection = self.browser.connection
        context_id = await connection.send(cdp.target.create_browser_context(dispose_on_detach=True))
        target_id = await connection.send(cdp.target.create_target(url="about:blank", browser_context_id=context_id))

        tab = await self._find_tab(target_id)
        if tab is None:
            await connection.send(cdp.target.dispose_browser_context(context_id))
            raise NavigationError(f"Tab for target {target_id} did not appear")

        logger.debug(f"[RELAY] Session {self.session_id}: opened context {context_id}")
        return BrowsingContext(self, tab, context_id)

    async def _find_tab(self, target_id: Any) -> Any | None:
        for _ in range(_TARGET_LOOKUP_ATTEMPTS):
            await self.browser.update_targets()
            for target in self.browser.targets:
                info = getattr(target, "target", None)
                if info is not None and info.target_id == target_id:
                    return target
            await asyncio.sleep(_TARGET_LOOKUP_DELAY)
        return None

    async def dispose(self) -> None:
        """Stop the Chrome process. Safe to call more than once."""
        if self._disposed:
            return
        self._disposed = True
        try:
            result = self.browser.stop()
            if inspect.isawaitable(result):
                await result
            logger.debug(f"[RELAY] Session {self.session_id} stopped (age={self.age_seconds:.1f}s)")
        except Exception as e:
            logger.warning(f"[RELAY] Error stopping session {self.session_id}: {e}")

    def __repr__(self) -> str:
        return f"EngineSession(id={self.session_id}, pooled={self.pooled}, alive={self.alive})"


class SessionFactory:
    """Launches EngineSessions from application settings."""

    def __init__(self, settings: "Settings") -> None:
        self.settings = settings
        self.headless = settings.RELAY_HEADLESS
        self.sandbox = settings.RELAY_SANDBOX
        self.browser_executable_path = settings.RELAY_CHROME_BIN
        self.launch_timeout = settings.RELAY_LAUNCH_TIMEOUT

    def launch_args(self, proxy: "ProxyConfig | None" = None) -> list[str]:
        args = list(BASE_LAUNCH_ARGS)
        args.append(f"--window-size={self.settings.RELAY_VIEWPORT_WIDTH},{self.settings.RELAY_VIEWPORT_HEIGHT}")
        if not self.sandbox:
            args.append("--no-sandbox")
        args.extend(self.settings.RELAY_BROWSER_ARGS)
        if proxy is not None:
            args.append(proxy.launch_arg)
        return args

    async def launch(self, proxy: "ProxyConfig | None" = None, pooled: bool = False) -> EngineSession:
        """
        Start a new Chrome process.

        Args:
            proxy: Proxy the whole engine routes through (credentials excluded)
            pooled: Mark the session as pool-owned

        Returns:
            EngineSession ready to open contexts

        Raises:
            EngineLaunchError: If Chrome fails to start within the launch timeout
        """
        args = self.launch_args(proxy)
        start_time = time.time()

        try:
            browser = await asyncio.wait_for(
                uc.start(
                    headless=self.headless,
                    sandbox=self.sandbox,
                    browser_executable_path=self.browser_executable_path,
                    browser_args=args,
                    lang="en-US",
                ),
                timeout=self.launch_timeout,
            )
        except TimeoutError as e:
            raise EngineLaunchError(
                f"Browser did not start within {self.launch_timeout}s",
                launch_args=args,
            ) from e
        except Exception as e:
            raise EngineLaunchError(f"Failed to start browser: {e}", launch_args=args) from e

        session = EngineSession(browser, args, pooled=pooled)
        logger.info(
            f"[RELAY] Session {session.session_id} launched in {(time.time() - start_time) * 1000:.0f}ms "
            f"(pooled={pooled}, proxy={proxy.endpoint if proxy else None})"
        )
        return session

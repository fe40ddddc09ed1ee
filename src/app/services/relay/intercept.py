"""
Relay - Request Rewrite Intercept

Fetch-domain interception for one browsing context:
- the FIRST top-level navigation request (Document in the main frame) is
  rewritten to the caller's method, headers and body
- every other request (subresources, iframes, redirect hops) continues untouched
- top-level navigation responses are paused so status, headers and body can be
  captured for the final (non-redirect) document
- proxy auth challenges are answered with the proxy credentials
- the main frame stopping loading marks the page as loaded (or, with no
  captured document, ends the wait with no response)

CDP events arrive on nodriver's listener; handlers only schedule tasks so a
slow CDP round-trip never stalls event delivery.
"""

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from nodriver import cdp
from nodriver.core.connection import ProtocolException

from .exceptions import NavigationError
from .models import FetchRequest, FetchResponse, decode_body, normalize_headers

if TYPE_CHECKING:
    from .proxy import ProxyConfig

logger = logging.getLogger(__name__)

DOCUMENT_RESOURCE_TYPE = "Document"


class RewriteAction(str, Enum):
    """What to do with one paused request."""

    PASS_THROUGH = "pass_through"
    REWRITE = "rewrite"


@dataclass(frozen=True)
class RequestMeta:
    """The parts of a paused request the rewrite decision looks at."""

    url: str
    method: str
    resource_type: str
    frame_id: str
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_event(cls, ev: Any) -> "RequestMeta":
        resource_type = getattr(ev.resource_type, "value", ev.resource_type)
        return cls(
            url=ev.request.url,
            method=ev.request.method,
            resource_type=str(resource_type),
            frame_id=str(ev.frame_id),
            headers=dict(ev.request.headers or {}),
        )


@dataclass(frozen=True)
class RewriteSpec:
    """Caller-controlled parts of the top-level request."""

    method: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None

    @classmethod
    def from_request(cls, request: FetchRequest) -> "RewriteSpec":
        return cls(method=request.method, headers=dict(request.headers), body=request.body)


@dataclass(frozen=True)
class RewriteDecision:
    """Outcome of decide_rewrite; post_data is base64 as Fetch.continueRequest expects."""

    action: RewriteAction
    method: str | None = None
    headers: dict[str, str] | None = None
    post_data: str | None = None

    @property
    def rewrite(self) -> bool:
        return self.action == RewriteAction.REWRITE


PASS_THROUGH = RewriteDecision(action=RewriteAction.PASS_THROUGH)


def is_top_level_navigation(request: RequestMeta, main_frame_id: str) -> bool:
    return request.resource_type == DOCUMENT_RESOURCE_TYPE and request.frame_id == main_frame_id


def merge_headers(original: dict[str, str], overrides: dict[str, str], body: str | None = None) -> dict[str, str]:
    """
    Overlay caller headers onto the browser's own request headers.

    Names match case-insensitively; the caller's spelling wins. A JSON body gets
    a Content-Type when the caller did not send one.
    """
    override_keys = {name.lower() for name in overrides}
    merged = {name: value for name, value in original.items() if name.lower() not in override_keys}
    merged.update(overrides)
    if body is not None and "content-type" not in {name.lower() for name in merged}:
        merged["Content-Type"] = "application/json"
    return merged


def decide_rewrite(
    request: RequestMeta,
    is_top_level_navigation: bool,
    rewrite: RewriteSpec,
    already_rewritten: bool = False,
) -> RewriteDecision:
    """
    Decide whether a paused request is rewritten.

    Only the first top-level navigation request of a fetch is rewritten;
    subresources and redirect follow-ups keep what the browser would send.

    Args:
        request: Paused request metadata
        is_top_level_navigation: Document request issued by the main frame
        rewrite: Caller's method/headers/body
        already_rewritten: A top-level request was already rewritten in this fetch

    Returns:
        RewriteDecision (PASS_THROUGH or REWRITE with the final method/headers/body)
    """
    if not is_top_level_navigation or already_rewritten:
        return PASS_THROUGH

    post_data = None
    if rewrite.body is not None:
        post_data = base64.b64encode(rewrite.body.encode("utf-8")).decode("ascii")

    return RewriteDecision(
        action=RewriteAction.REWRITE,
        method=rewrite.method,
        headers=merge_headers(request.headers, rewrite.headers, rewrite.body),
        post_data=post_data,
    )


def auth_challenge_answer(source: str | None, proxy: "ProxyConfig | None") -> tuple[str, str | None, str | None]:
    """
    (response, username, password) for a Fetch.authRequired challenge.

    Only proxy challenges get credentials; server challenges fall back to the
    browser default (which shows no prompt in headless mode).
    """
    if source == "Proxy" and proxy is not None and proxy.has_credentials:
        return "ProvideCredentials", proxy.username, proxy.password or ""
    return "Default", None, None


class RequestInterceptor:
    """
    Installs and drives Fetch-domain interception on one tab.

    Usage:
        interceptor = RequestInterceptor(tab, RewriteSpec.from_request(req), context.main_frame_id)
        await interceptor.install()
        interceptor.mark_navigation_started()
        await context.navigate(url)
        response = await interceptor.wait_for_response()
        await interceptor.wait_for_load()
        await interceptor.close()
    """

    def __init__(
        self,
        tab: Any,
        rewrite: RewriteSpec,
        main_frame_id: str,
        proxy: "ProxyConfig | None" = None,
        url: str | None = None,
    ) -> None:
        self.tab = tab
        self.rewrite = rewrite
        self.main_frame_id = main_frame_id
        self.proxy = proxy
        self.url = url
        self.tasks: set[asyncio.Task] = set()
        self._response: asyncio.Future[FetchResponse | None] = asyncio.get_running_loop().create_future()
        self._rewritten = False
        self._navigation_started = False
        self._loaded = asyncio.Event()
        self._stats = {"rewritten": 0, "passed": 0, "auth_answered": 0}

    @property
    def loaded(self) -> bool:
        return self._loaded.is_set()

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    async def install(self) -> None:
        """Enable interception; must complete before navigation starts."""
        await self.tab.send(cdp.page.enable())
        await self.tab.send(
            cdp.fetch.enable(
                patterns=[cdp.fetch.RequestPattern(url_pattern="*", request_stage=cdp.fetch.RequestStage.REQUEST)],
                handle_auth_requests=True,
            )
        )
        # nodriver would otherwise re-enable these domains without our patterns
        for domain in (cdp.page, cdp.fetch):
            if domain not in self.tab.enabled_domains:
                self.tab.enabled_domains.append(domain)

        self.tab.add_handler(cdp.fetch.RequestPaused, self.handle_request_paused)
        self.tab.add_handler(cdp.fetch.AuthRequired, self.handle_auth_required)
        self.tab.add_handler(cdp.page.FrameStoppedLoading, self.handle_frame_stopped_loading)

    def mark_navigation_started(self) -> None:
        self._navigation_started = True

    async def wait_for_response(self) -> FetchResponse | None:
        """Captured main document response, or None if the frame loaded without one."""
        return await self._response

    async def wait_for_load(self) -> None:
        """Main frame finished loading (load event), so inline page scripts have run."""
        await self._loaded.wait()

    async def close(self) -> None:
        """Cancel outstanding handler work; the context is about to be disposed."""
        pending = [task for task in self.tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if not self._response.done():
            self._response.cancel()
        elif not self._response.cancelled():
            # A failure recorded after the caller stopped waiting is still consumed
            self._response.exception()
        logger.debug(f"[RELAY] Interceptor closed ({self._stats})")

    # -------------------------------------------------------------------------
    # Event entry points (called by nodriver's listener)
    # -------------------------------------------------------------------------
    def handle_request_paused(self, ev: cdp.fetch.RequestPaused) -> None:
        self._schedule(self._on_request_paused(ev))

    def handle_auth_required(self, ev: cdp.fetch.AuthRequired) -> None:
        self._schedule(self._on_auth_required(ev))

    def handle_frame_stopped_loading(self, ev: cdp.page.FrameStoppedLoading) -> None:
        if str(ev.frame_id) != self.main_frame_id or not self._navigation_started:
            return
        self._loaded.set()
        if not self._response.done():
            self._schedule(self._finish_without_response())

    def _schedule(self, coro) -> None:
        task = asyncio.create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------
    async def _on_request_paused(self, ev: cdp.fetch.RequestPaused) -> None:
        meta = RequestMeta.from_event(ev)
        top_level = is_top_level_navigation(meta, self.main_frame_id)

        try:
            if ev.response_status_code is None and ev.response_error_reason is None:
                await self._continue_request_stage(ev, meta, top_level)
            else:
                await self._handle_response_stage(ev, meta)
        except ProtocolException as e:
            # Requests can be cancelled by the page between pause and continue
            logger.debug(f"[RELAY] CDP error for {meta.url}: {e}")
            if top_level:
                self._fail(NavigationError(f"Interception failed: {e}", url=self.url))

    async def _continue_request_stage(self, ev: cdp.fetch.RequestPaused, meta: RequestMeta, top_level: bool) -> None:
        decision = decide_rewrite(meta, top_level, self.rewrite, already_rewritten=self._rewritten)

        if decision.rewrite:
            self._rewritten = True
            self._stats["rewritten"] += 1
            logger.debug(f"[RELAY] Rewriting navigation {decision.method} {meta.url}")
            await self.tab.send(
                cdp.fetch.continue_request(
                    request_id=ev.request_id,
                    method=decision.method,
                    post_data=decision.post_data,
                    headers=[cdp.fetch.HeaderEntry(name=k, value=v) for k, v in decision.headers.items()],
                    intercept_response=True,
                )
            )
            return

        self._stats["passed"] += 1
        await self.tab.send(
            cdp.fetch.continue_request(
                request_id=ev.request_id,
                intercept_response=True if top_level else None,
            )
        )

    async def _handle_response_stage(self, ev: cdp.fetch.RequestPaused, meta: RequestMeta) -> None:
        if ev.response_error_reason is not None:
            reason = str(getattr(ev.response_error_reason, "value", ev.response_error_reason))
            self._fail(NavigationError(f"Navigation failed: {reason}", url=self.url, reason=reason))
            await self.tab.send(cdp.fetch.fail_request(request_id=ev.request_id, error_reason=ev.response_error_reason))
            return

        status = ev.response_status_code
        headers = normalize_headers([(h.name, h.value) for h in ev.response_headers or []])

        if 300 <= status < 400 and "location" in headers:
            logger.debug(f"[RELAY] Redirect {status} {meta.url} -> {headers['location']}")
            await self.tab.send(cdp.fetch.continue_request(request_id=ev.request_id))
            return

        text = await self._read_text(ev.request_id, meta.url, headers.get("content-type"))
        self._resolve(FetchResponse(status=status, headers=headers, text=text))
        logger.debug(f"[RELAY] Captured {status} for {meta.url} ({len(text)} chars)")
        await self.tab.send(cdp.fetch.continue_request(request_id=ev.request_id))

    async def _read_text(self, request_id: Any, url: str, content_type: str | None) -> str:
        try:
            body, base64_encoded = await self.tab.send(cdp.fetch.get_response_body(request_id=request_id))
        except ProtocolException as e:
            # 204/304/HEAD responses have no body to hand out
            logger.debug(f"[RELAY] No body for {url}: {e}")
            return ""
        if base64_encoded:
            return decode_body(base64.b64decode(body), content_type)
        # Chrome already decoded text bodies with the response charset
        return body

    async def _on_auth_required(self, ev: cdp.fetch.AuthRequired) -> None:
        source = getattr(ev.auth_challenge, "source", None)
        response, username, password = auth_challenge_answer(source, self.proxy)
        if response == "ProvideCredentials":
            self._stats["auth_answered"] += 1
        await self.tab.send(
            cdp.fetch.continue_with_auth(
                request_id=ev.request_id,
                auth_challenge_response=cdp.fetch.AuthChallengeResponse(
                    response=response,
                    username=username,
                    password=password,
                ),
            )
        )

    async def _finish_without_response(self) -> None:
        # Let response-stage handlers that are already running settle first
        current = asyncio.current_task()
        others = [task for task in self.tasks if task is not current and not task.done()]
        if others:
            await asyncio.gather(*others, return_exceptions=True)
        self._resolve(None)

    def _resolve(self, response: FetchResponse | None) -> None:
        if not self._response.done():
            self._response.set_result(response)

    def _fail(self, error: Exception) -> None:
        if not self._response.done():
            self._response.set_exception(error)

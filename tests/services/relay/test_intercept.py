"""
Unit tests for the request-rewrite intercept.

Covers:
- decide_rewrite(): only the first top-level navigation request is rewritten
- merge_headers(): caller headers override browser headers case-insensitively
- proxy auth answers
- RequestInterceptor driven with real CDP command payloads on a fake tab
"""

import asyncio
import base64
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from nodriver import cdp
from nodriver.core.connection import ProtocolException

from src.app.services.relay.exceptions import NavigationError
from src.app.services.relay.intercept import (
    PASS_THROUGH,
    RequestInterceptor,
    RequestMeta,
    RewriteAction,
    RewriteSpec,
    auth_challenge_answer,
    decide_rewrite,
    is_top_level_navigation,
    merge_headers,
)
from src.app.services.relay.models import FetchRequest
from src.app.services.relay.proxy import ProxyConfig

MAIN_FRAME = "MAIN-FRAME"


def meta(resource_type: str = "Document", frame_id: str = MAIN_FRAME, **kwargs: Any) -> RequestMeta:
    return RequestMeta(
        url=kwargs.get("url", "https://echo.test/"),
        method=kwargs.get("method", "GET"),
        resource_type=resource_type,
        frame_id=frame_id,
        headers=kwargs.get("headers", {"User-Agent": "Browser/1", "Accept": "text/html"}),
    )


def paused_event(
    request_id: str = "r1",
    url: str = "https://echo.test/",
    resource_type: cdp.network.ResourceType = cdp.network.ResourceType.DOCUMENT,
    frame_id: str = MAIN_FRAME,
    status: int | None = None,
    error: cdp.network.ErrorReason | None = None,
    headers: list[tuple[str, str]] | None = None,
) -> SimpleNamespace:
    return SimpleNamespace(
        request_id=cdp.fetch.RequestId(request_id),
        request=SimpleNamespace(url=url, method="GET", headers={"Accept": "text/html"}),
        frame_id=cdp.page.FrameId(frame_id),
        resource_type=resource_type,
        response_status_code=status,
        response_error_reason=error,
        response_headers=[cdp.fetch.HeaderEntry(name=n, value=v) for n, v in headers] if headers else None,
    )


class FakeTab:
    """Records the CDP payloads the interceptor sends."""

    def __init__(self, body: tuple[str, bool] = ("", False), body_error: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.body = body
        self.body_error = body_error
        self.enabled_domains: list[Any] = []
        self.add_handler = MagicMock()
        self.send = AsyncMock(side_effect=self._send)

    async def _send(self, command: Any) -> Any:
        payload = next(command)
        self.sent.append(payload)
        if payload["method"] == "Fetch.getResponseBody":
            if self.body_error:
                raise ProtocolException({"code": -32000, "message": "No data found for resource"})
            return self.body
        return None

    def methods(self) -> list[str]:
        return [p["method"] for p in self.sent]

    def last(self, method: str) -> dict[str, Any]:
        return [p for p in self.sent if p["method"] == method][-1]["params"]


async def drain(interceptor: RequestInterceptor) -> None:
    while interceptor.tasks:
        await asyncio.gather(*list(interceptor.tasks))


# =============================================================================
# DECISION TESTS
# =============================================================================
class TestDecideRewrite:
    """Pure rewrite decision."""

    def test_top_level_rewritten(self) -> None:
        rewrite = RewriteSpec(method="POST", headers={"X": "1"}, body='{"a":1}')
        decision = decide_rewrite(meta(), True, rewrite)

        assert decision.rewrite
        assert decision.action == RewriteAction.REWRITE
        assert decision.method == "POST"
        assert decision.headers["X"] == "1"
        assert decision.headers["Content-Type"] == "application/json"
        assert base64.b64decode(decision.post_data).decode() == '{"a":1}'

    def test_get_without_body(self) -> None:
        decision = decide_rewrite(meta(), True, RewriteSpec(method="GET"))
        assert decision.rewrite
        assert decision.post_data is None
        assert "Content-Type" not in decision.headers

    @pytest.mark.parametrize(
        "resource_type, frame_id",
        [
            ("Script", MAIN_FRAME),
            ("Stylesheet", MAIN_FRAME),
            ("Image", MAIN_FRAME),
            ("XHR", MAIN_FRAME),
            ("Fetch", MAIN_FRAME),
            ("Document", "CHILD-FRAME"),
        ],
    )
    def test_other_requests_pass_through(self, resource_type: str, frame_id: str) -> None:
        request = meta(resource_type=resource_type, frame_id=frame_id)
        top_level = is_top_level_navigation(request, MAIN_FRAME)
        assert not top_level
        assert decide_rewrite(request, top_level, RewriteSpec(method="POST")) is PASS_THROUGH

    def test_only_first_top_level_rewritten(self) -> None:
        decision = decide_rewrite(meta(), True, RewriteSpec(method="POST"), already_rewritten=True)
        assert decision == PASS_THROUGH
        assert not decision.rewrite

    def test_is_top_level_navigation(self) -> None:
        assert is_top_level_navigation(meta(), MAIN_FRAME)


class TestMergeHeaders:
    """Header merge rules."""

    def test_caller_overrides_case_insensitive(self) -> None:
        merged = merge_headers({"User-Agent": "Browser/1", "Accept": "text/html"}, {"user-agent": "Mine/2"})
        assert merged == {"Accept": "text/html", "user-agent": "Mine/2"}

    def test_caller_content_type_kept(self) -> None:
        merged = merge_headers({}, {"content-type": "text/plain"}, body="x")
        assert merged == {"content-type": "text/plain"}

    def test_browser_content_type_counts(self) -> None:
        merged = merge_headers({"Content-Type": "application/x-www-form-urlencoded"}, {}, body="x")
        assert merged == {"Content-Type": "application/x-www-form-urlencoded"}


class TestAuthChallengeAnswer:
    """Only proxy challenges receive credentials."""

    def test_proxy_with_credentials(self) -> None:
        proxy = ProxyConfig(endpoint="http://h:1", username="u", password="p")
        assert auth_challenge_answer("Proxy", proxy) == ("ProvideCredentials", "u", "p")

    def test_server_challenge_default(self) -> None:
        proxy = ProxyConfig(endpoint="http://h:1", username="u", password="p")
        assert auth_challenge_answer("Server", proxy) == ("Default", None, None)

    def test_proxy_without_credentials(self) -> None:
        assert auth_challenge_answer("Proxy", ProxyConfig(endpoint="http://h:1")) == ("Default", None, None)
        assert auth_challenge_answer("Proxy", None) == ("Default", None, None)

    def test_username_only(self) -> None:
        assert auth_challenge_answer("Proxy", ProxyConfig(endpoint="http://h:1", username="u")) == (
            "ProvideCredentials",
            "u",
            "",
        )


# =============================================================================
# INTERCEPTOR TESTS
# =============================================================================
@pytest.fixture
def echo_request() -> FetchRequest:
    return FetchRequest(
        method="POST",
        url="http://echo.test/",
        headers={"X": "1"},
        data={"a": 1},
        timeout_ms=5000,
    )


def make_interceptor(tab: FakeTab, request: FetchRequest, proxy: ProxyConfig | None = None) -> RequestInterceptor:
    return RequestInterceptor(tab, RewriteSpec.from_request(request), MAIN_FRAME, proxy=proxy, url=request.url)


class TestRequestInterceptor:
    """RequestInterceptor against a fake tab."""

    @pytest.mark.asyncio
    async def test_install(self, echo_request: FetchRequest) -> None:
        tab = FakeTab()
        interceptor = make_interceptor(tab, echo_request)

        await interceptor.install()

        assert tab.methods() == ["Page.enable", "Fetch.enable"]
        params = tab.last("Fetch.enable")
        assert params["handleAuthRequests"] is True
        assert params["patterns"] == [{"urlPattern": "*", "requestStage": "Request"}]
        assert cdp.fetch in tab.enabled_domains
        assert cdp.page in tab.enabled_domains
        handled = [c.args[0] for c in tab.add_handler.call_args_list]
        assert handled == [cdp.fetch.RequestPaused, cdp.fetch.AuthRequired, cdp.page.FrameStoppedLoading]
        await interceptor.close()

    @pytest.mark.asyncio
    async def test_rewrites_navigation_and_captures_response(self, echo_request: FetchRequest) -> None:
        body = '{"method":"POST","headers":{"X":"1"},"body":{"a":1}}'
        tab = FakeTab(body=(base64.b64encode(body.encode()).decode(), True))
        interceptor = make_interceptor(tab, echo_request)

        interceptor.handle_request_paused(paused_event())
        await drain(interceptor)

        params = tab.last("Fetch.continueRequest")
        assert params["method"] == "POST"
        assert params["interceptResponse"] is True
        assert base64.b64decode(params["postData"]).decode() == '{"a":1}'
        headers = {h["name"]: h["value"] for h in params["headers"]}
        assert headers["X"] == "1"
        assert headers["Content-Type"] == "application/json"
        assert headers["Accept"] == "text/html"

        interceptor.handle_request_paused(
            paused_event(status=200, headers=[("Content-Type", "application/json"), ("X-Echo", "yes")])
        )
        await drain(interceptor)

        response = await interceptor.wait_for_response()
        assert response.status == 200
        assert response.headers == {"content-type": "application/json", "x-echo": "yes"}
        assert '"X":"1"' in response.text
        assert '"a":1' in response.text
        assert tab.methods()[-2:] == ["Fetch.getResponseBody", "Fetch.continueRequest"]
        assert interceptor.stats["rewritten"] == 1
        await interceptor.close()

    @pytest.mark.asyncio
    async def test_subresources_untouched(self, echo_request: FetchRequest) -> None:
        tab = FakeTab()
        interceptor = make_interceptor(tab, echo_request)

        interceptor.handle_request_paused(paused_event("r1"))
        interceptor.handle_request_paused(paused_event("r2", resource_type=cdp.network.ResourceType.SCRIPT))
        interceptor.handle_request_paused(paused_event("r3", resource_type=cdp.network.ResourceType.XHR))
        interceptor.handle_request_paused(paused_event("r4", frame_id="CHILD"))
        await drain(interceptor)

        by_id = {p["params"]["requestId"]: p["params"] for p in tab.sent if p["method"] == "Fetch.continueRequest"}
        assert by_id["r1"]["method"] == "POST"
        for request_id in ("r2", "r3", "r4"):
            assert by_id[request_id] == {"requestId": request_id}
        assert interceptor.stats == {"rewritten": 1, "passed": 3, "auth_answered": 0}
        await interceptor.close()

    @pytest.mark.asyncio
    async def test_redirect_followed_and_not_rewritten_again(self, echo_request: FetchRequest) -> None:
        tab = FakeTab(body=("final", False))
        interceptor = make_interceptor(tab, echo_request)

        interceptor.handle_request_paused(paused_event("r1"))
        await drain(interceptor)
        interceptor.handle_request_paused(paused_event("r1", status=302, headers=[("Location", "/next")]))
        await drain(interceptor)
        interceptor.handle_request_paused(paused_event("r2", url="http://echo.test/next"))
        await drain(interceptor)

        follow_up = tab.sent[-1]["params"]
        assert follow_up == {"requestId": "r2", "interceptResponse": True}
        assert "Fetch.getResponseBody" not in tab.methods()

        interceptor.handle_request_paused(paused_event("r2", status=200, headers=[("Content-Type", "text/plain")]))
        await drain(interceptor)
        response = await interceptor.wait_for_response()
        assert response.status == 200
        assert response.text == "final"
        await interceptor.close()

    @pytest.mark.asyncio
    async def test_missing_body_yields_empty_text(self, echo_request: FetchRequest) -> None:
        tab = FakeTab(body_error=True)
        interceptor = make_interceptor(tab, echo_request)

        interceptor.handle_request_paused(paused_event(status=204))
        await drain(interceptor)

        response = await interceptor.wait_for_response()
        assert response.status == 204
        assert response.text == ""
        await interceptor.close()

    @pytest.mark.asyncio
    async def test_network_error_fails_navigation(self, echo_request: FetchRequest) -> None:
        tab = FakeTab()
        interceptor = make_interceptor(tab, echo_request)

        interceptor.handle_request_paused(paused_event(error=cdp.network.ErrorReason.NAME_NOT_RESOLVED))
        await drain(interceptor)

        with pytest.raises(NavigationError) as exc_info:
            await interceptor.wait_for_response()
        assert exc_info.value.reason == "NameNotResolved"
        assert tab.last("Fetch.failRequest") == {"requestId": "r1", "errorReason": "NameNotResolved"}
        await interceptor.close()

    @pytest.mark.asyncio
    async def test_frame_stopped_without_response(self, echo_request: FetchRequest) -> None:
        interceptor = make_interceptor(FakeTab(), echo_request)
        interceptor.mark_navigation_started()

        interceptor.handle_frame_stopped_loading(SimpleNamespace(frame_id=cdp.page.FrameId(MAIN_FRAME)))
        await drain(interceptor)

        assert await interceptor.wait_for_response() is None
        await interceptor.close()

    @pytest.mark.asyncio
    async def test_frame_stopped_ignored_before_navigation(self, echo_request: FetchRequest) -> None:
        interceptor = make_interceptor(FakeTab(), echo_request)

        interceptor.handle_frame_stopped_loading(SimpleNamespace(frame_id=cdp.page.FrameId(MAIN_FRAME)))
        interceptor.mark_navigation_started()
        interceptor.handle_frame_stopped_loading(SimpleNamespace(frame_id=cdp.page.FrameId("CHILD")))

        assert not interceptor.tasks
        await interceptor.close()

    @pytest.mark.asyncio
    async def test_proxy_auth_answered(self, echo_request: FetchRequest) -> None:
        tab = FakeTab()
        proxy = ProxyConfig(endpoint="http://h:1", username="u", password="p")
        interceptor = make_interceptor(tab, echo_request, proxy=proxy)

        interceptor.handle_auth_required(
            SimpleNamespace(request_id=cdp.fetch.RequestId("a1"), auth_challenge=SimpleNamespace(source="Proxy"))
        )
        await drain(interceptor)

        params = tab.last("Fetch.continueWithAuth")
        assert params["authChallengeResponse"] == {"response": "ProvideCredentials", "username": "u", "password": "p"}
        assert interceptor.stats["auth_answered"] == 1
        await interceptor.close()

    @pytest.mark.asyncio
    async def test_close_cancels_pending(self, echo_request: FetchRequest) -> None:
        tab = FakeTab()
        started = asyncio.Event()

        async def hang(command: Any) -> None:
            started.set()
            await asyncio.sleep(10)

        tab.send = AsyncMock(side_effect=hang)
        interceptor = make_interceptor(tab, echo_request)
        interceptor.handle_request_paused(paused_event())
        await started.wait()

        await interceptor.close()

        assert not interceptor.tasks

    @pytest.mark.asyncio
    async def test_text_body_kept_as_decoded_by_chrome(self, echo_request: FetchRequest) -> None:
        tab = FakeTab(body=("café", False))
        interceptor = make_interceptor(tab, echo_request)

        interceptor.handle_request_paused(
            paused_event(status=200, headers=[("Content-Type", "text/html; charset=iso-8859-1")])
        )
        await drain(interceptor)

        response = await interceptor.wait_for_response()
        assert response.text == "café"
        await interceptor.close()

    @pytest.mark.asyncio
    async def test_base64_body_decoded_with_charset(self, echo_request: FetchRequest) -> None:
        tab = FakeTab(body=(base64.b64encode("café".encode("iso-8859-1")).decode(), True))
        interceptor = make_interceptor(tab, echo_request)

        interceptor.handle_request_paused(
            paused_event(status=200, headers=[("Content-Type", "text/html; charset=iso-8859-1")])
        )
        await drain(interceptor)

        response = await interceptor.wait_for_response()
        assert response.text == "café"
        await interceptor.close()

    @pytest.mark.asyncio
    async def test_close_consumes_unawaited_failure(self, echo_request: FetchRequest) -> None:
        interceptor = make_interceptor(FakeTab(), echo_request)

        # Failure lands after the caller stopped waiting (e.g. on timeout)
        interceptor.handle_request_paused(paused_event(error=cdp.network.ErrorReason.CONNECTION_RESET))
        await drain(interceptor)
        await interceptor.close()

        future = interceptor._response
        assert future.done()
        assert not future._log_traceback

    @pytest.mark.asyncio
    async def test_frame_stopped_marks_loaded(self, echo_request: FetchRequest) -> None:
        tab = FakeTab(body=("<html></html>", False))
        interceptor = make_interceptor(tab, echo_request)
        interceptor.mark_navigation_started()

        interceptor.handle_request_paused(paused_event(status=200, headers=[("Content-Type", "text/html")]))
        await drain(interceptor)
        assert not interceptor.loaded

        interceptor.handle_frame_stopped_loading(SimpleNamespace(frame_id=cdp.page.FrameId(MAIN_FRAME)))

        assert interceptor.loaded
        assert not interceptor.tasks
        await asyncio.wait_for(interceptor.wait_for_load(), timeout=1)
        assert (await interceptor.wait_for_response()).status == 200
        await interceptor.close()

    @pytest.mark.asyncio
    async def test_frame_stopped_before_navigation_not_loaded(self, echo_request: FetchRequest) -> None:
        interceptor = make_interceptor(FakeTab(), echo_request)

        interceptor.handle_frame_stopped_loading(SimpleNamespace(frame_id=cdp.page.FrameId(MAIN_FRAME)))

        assert not interceptor.loaded
        await interceptor.close()

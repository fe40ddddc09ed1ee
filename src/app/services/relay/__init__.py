# ============================================
# RELAY - Fetch-via-Browser Engine
# ============================================
#
# Executes declarative HTTP requests through a real Chrome engine so the
# target sees a full browser fingerprint (TLS, navigator, WebGL, client hints).
#
# Architecture:
#   SessionPool    - bounded pool of Chrome processes (pooled mode, global proxy)
#   SessionFactory - launches Chrome via nodriver (ad hoc mode, one per request)
#   EvasionProfile - patch catalog injected before any page script runs
#   RequestInterceptor - rewrites the top-level navigation request over CDP Fetch
#   FetchPipeline  - ties it together with guaranteed cleanup
# ============================================

from .evasion import DEFAULT_PATCHES, DEFAULT_USER_AGENT, ClientHints, EvasionPatch, EvasionProfile, client_hints_for
from .exceptions import (
    AuthenticationError,
    EngineLaunchError,
    NavigationError,
    NavigationTimeoutError,
    NoResponseError,
    RelayException,
    RelayInternalError,
    RelayValidationError,
)
from .intercept import RequestInterceptor, RequestMeta, RewriteAction, RewriteDecision, RewriteSpec, decide_rewrite
from .models import FetchRequest, FetchResponse
from .pipeline import FetchPipeline, PipelineState
from .pool import PoolStats, SessionPool
from .proxy import ProxyConfig, parse_proxy, resolve_proxy
from .session import BrowsingContext, EngineSession, SessionFactory

__all__ = [
    # Pipeline
    "FetchPipeline",
    "PipelineState",
    "FetchRequest",
    "FetchResponse",
    # Pool & sessions
    "SessionPool",
    "PoolStats",
    "SessionFactory",
    "EngineSession",
    "BrowsingContext",
    # Proxy
    "ProxyConfig",
    "parse_proxy",
    "resolve_proxy",
    # Evasion
    "EvasionProfile",
    "EvasionPatch",
    "ClientHints",
    "client_hints_for",
    "DEFAULT_PATCHES",
    "DEFAULT_USER_AGENT",
    # Intercept
    "RequestInterceptor",
    "RequestMeta",
    "RewriteAction",
    "RewriteDecision",
    "RewriteSpec",
    "decide_rewrite",
    # Exceptions
    "RelayException",
    "RelayValidationError",
    "AuthenticationError",
    "EngineLaunchError",
    "NavigationError",
    "NavigationTimeoutError",
    "NoResponseError",
    "RelayInternalError",
]

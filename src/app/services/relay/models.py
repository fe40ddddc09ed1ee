"""Relay data model.

FetchRequest is the declarative request handed to the pipeline, FetchResponse
is what comes back from a successful navigation.
"""

import json
import uuid
from dataclasses import dataclass, field
from typing import Any

from .exceptions import RelayValidationError

DEFAULT_METHOD = "GET"
DEFAULT_TIMEOUT_MS = 10_000


@dataclass
class FetchRequest:
    """A single fetch to be executed through the browser engine."""

    url: str
    method: str = DEFAULT_METHOD
    headers: dict[str, str] = field(default_factory=dict)
    data: Any | None = None
    timeout_ms: int | None = None
    proxy: str | None = None

    # Correlates log lines of one pipeline run
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def __post_init__(self) -> None:
        self.method = (self.method or DEFAULT_METHOD).upper()
        self.headers = dict(self.headers or {})

    def validate(self) -> None:
        """Reject requests that must never reach the session pool."""
        if not self.url or not self.url.strip():
            raise RelayValidationError("URL is required", field="url")
        for name, value in self.headers.items():
            if not isinstance(name, str) or not isinstance(value, str):
                raise RelayValidationError("Header names and values must be strings", field="headers")

    @property
    def body(self) -> str | None:
        """JSON text of ``data``, in the compact form browsers produce.

        Falsy scalars (null, false, 0, "") send no body; empty objects and
        arrays are still sent.
        """
        if self.data is None or (isinstance(self.data, (bool, int, float, str)) and not self.data):
            return None
        return json.dumps(self.data, separators=(",", ":"), ensure_ascii=False)

    def effective_timeout_ms(self, default: int = DEFAULT_TIMEOUT_MS) -> int:
        if self.timeout_ms is None or self.timeout_ms <= 0:
            return default
        return self.timeout_ms

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


@dataclass
class FetchResponse:
    """Normalized response of the remote server for the top-level navigation."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    text: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "headers": dict(self.headers), "text": self.text}


def normalize_headers(entries: list[tuple[str, str]]) -> dict[str, str]:
    """Collapse raw header pairs into a dict.

    Names are lower-cased, repeated headers (Set-Cookie) are joined with a
    newline, the same convention Chrome uses when it reports headers.
    """
    headers: dict[str, str] = {}
    for name, value in entries:
        key = name.lower()
        if key in headers:
            headers[key] = f"{headers[key]}\n{value}"
        else:
            headers[key] = value
    return headers


def charset_from_content_type(content_type: str | None, default: str = "utf-8") -> str:
    """Extract the charset parameter of a Content-Type value."""
    if not content_type:
        return default
    for param in content_type.split(";")[1:]:
        key, _, value = param.strip().partition("=")
        if key.lower() == "charset" and value:
            return value.strip().strip('"').strip("'") or default
    return default


def decode_body(raw: bytes, content_type: str | None) -> str:
    """Decode a response body using the declared charset, falling back to UTF-8."""
    charset = charset_from_content_type(content_type)
    try:
        return raw.decode(charset, errors="replace")
    except LookupError:
        # Unknown charset label
        return raw.decode("utf-8", errors="replace")

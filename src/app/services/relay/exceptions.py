"""Relay Custom Exceptions.

Hierarchy:
    RelayException (base)
    ├── RelayValidationError      - missing URL, malformed proxy, bad request fields
    ├── AuthenticationError       - bad or missing API key (front end only)
    ├── EngineLaunchError         - Chrome process failed to start
    ├── NavigationError           - DNS/connection/engine-level navigation failure
    │   └── NavigationTimeoutError - navigation exceeded the request timeout
    ├── NoResponseError           - navigation finished without a response object
    └── RelayInternalError        - unexpected failure, surfaced with a generic message
"""


class RelayException(Exception):
    """Base exception for all Relay errors."""

    def __init__(self, message: str, url: str | None = None) -> None:
        self.message = message
        self.url = url
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.url:
            return f"{self.message} (URL: {self.url})"
        return self.message


class RelayValidationError(RelayException):
    """Raised when a fetch request is rejected before any session is acquired.

    Examples: missing URL, malformed proxy URL, wrong field types.
    """

    def __init__(self, message: str, url: str | None = None, field: str | None = None) -> None:
        super().__init__(message, url)
        self.field = field

    def __str__(self) -> str:
        # Validation messages go back to the caller verbatim
        return self.message


class AuthenticationError(RelayException):
    """Raised when the inbound request carries a missing or wrong API key."""


class EngineLaunchError(RelayException):
    """Raised when a Chrome process cannot be started.

    The pool never records a session for a failed launch.
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        launch_args: list[str] | None = None,
    ) -> None:
        super().__init__(message, url)
        self.launch_args = launch_args or []


class NavigationError(RelayException):
    """Raised when the engine fails to navigate (DNS, connection refused, TLS...)."""

    def __init__(
        self,
        message: str,
        url: str | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message, url)
        self.reason = reason  # e.g. "net::ERR_NAME_NOT_RESOLVED", "NameNotResolved"

    def __str__(self) -> str:
        parts = [self.message]
        if self.reason and self.reason not in self.message:
            parts.append(f"reason={self.reason}")
        if self.url:
            parts.append(f"url={self.url}")
        return " | ".join(parts)


class NavigationTimeoutError(NavigationError):
    """Raised when navigation plus response capture exceeds the request timeout.

    Only the browsing context is discarded; the engine stays reusable.
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        timeout_ms: int | None = None,
    ) -> None:
        super().__init__(message, url, reason="timeout")
        self.timeout_ms = timeout_ms

    def __str__(self) -> str:
        parts = [self.message]
        if self.timeout_ms and f"{self.timeout_ms} ms" not in self.message:
            parts.append(f"timeout={self.timeout_ms}ms")
        if self.url:
            parts.append(f"url={self.url}")
        return " | ".join(parts)


class NoResponseError(RelayException):
    """Raised when navigation completed but the main frame produced no response."""

    def __init__(self, message: str = "No response", url: str | None = None) -> None:
        super().__init__(message, url)


class RelayInternalError(RelayException):
    """Raised for unexpected failures inside the pipeline.

    The original exception is kept on ``cause`` for logging; callers only see
    the generic message.
    """

    def __init__(
        self,
        message: str = "An error occurred",
        url: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, url)
        self.cause = cause

    def __str__(self) -> str:
        return self.message

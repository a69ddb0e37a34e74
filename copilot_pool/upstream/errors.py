"""Exceptions raised by upstream calls and proxy routing."""


class UpstreamHTTPError(Exception):
    """A non-2xx response (or transport failure) from an upstream service."""

    def __init__(self, message: str, status_code: int, body: str = ""):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        if self.body:
            return f"{self.message} ({self.status_code}): {self.body}"
        return f"{self.message} ({self.status_code})"


class UpstreamAuthError(UpstreamHTTPError):
    """The credential issuer rejected the account's GitHub token."""


class ProxyError(Exception):
    """A routing or authentication failure rendered as ``{error: {message, type}}``."""

    def __init__(self, status_code: int, message: str, error_type: str = "api_error"):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.error_type = error_type

"""
Client-side error taxonomy.

Mirrors how the API reports failures (`HTTPException(status_code, detail)` and
`{"status": "ignored", "reason": ...}` bodies) so callers can branch on the kind of failure:
- TransientCommandError: timeouts / network errors / 5xx after retries were exhausted
- CommandRejected: 4xx validation failures (never retried)
- AuthRequiredError: 401/403, local credentials were cleared; the user must log in again
- StaleCommandError: the box moved on (stale_version / stale_session)
- CircuitOpenError: the stream gave up reconnecting; needs a manual reconnect
"""


class EscaladaClientError(Exception):
    """Base class for every error raised by escalada_client."""


class CommandError(EscaladaClientError):
    def __init__(
        self,
        command_type: str,
        detail: str | None = None,
        status_code: int | None = None,
    ):
        self.command_type = command_type
        self.detail = detail
        self.status_code = status_code
        message = f"[{command_type}] {detail or 'command failed'}"
        if status_code is not None:
            message = f"{message} (HTTP {status_code})"
        super().__init__(message)


class TransientCommandError(CommandError):
    """All retry attempts failed with a timeout, network error or 5xx."""


class CommandRejected(CommandError):
    """The authority refused the command (4xx); retrying cannot change the outcome."""


class AuthRequiredError(CommandRejected):
    """401/403: token missing, expired or not allowed for this box."""


class StaleCommandError(CommandError):
    """Command was built against an outdated boxVersion/sessionId."""

    def __init__(self, command_type: str, reason: str):
        self.reason = reason
        super().__init__(command_type, detail=reason)


class CircuitOpenError(EscaladaClientError):
    """Reconnect loop stopped; the connection must be restarted manually."""

    def __init__(self, url: str, attempts: int, message: str | None = None):
        self.url = url
        self.attempts = attempts
        super().__init__(
            message
            or (
                f"Connection to server failed after {attempts} attempts. "
                "Please check your network and reconnect."
            )
        )


__all__ = [
    "AuthRequiredError",
    "CircuitOpenError",
    "CommandError",
    "CommandRejected",
    "EscaladaClientError",
    "StaleCommandError",
    "TransientCommandError",
]

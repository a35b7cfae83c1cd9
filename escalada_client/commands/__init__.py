from .dispatcher import CommandDispatcher, CommandResult
from .fetch import request_with_retry, response_detail
from .session import AuthSession, read_claims

__all__ = [
    "AuthSession",
    "CommandDispatcher",
    "CommandResult",
    "read_claims",
    "request_with_retry",
    "response_detail",
]

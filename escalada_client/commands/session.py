"""
Bearer-token session shared by the command dispatcher and the authenticated streams.

JWT claims issued by the API:
- `sub`: username
- `role`: "admin" | "judge" | "viewer" | "spectator"
- `boxes`: list[int] of allowed box ids (can be empty)
- `exp`: expiry timestamp (UTC)

The client never holds the signing secret, so claims are read without signature
verification; they only drive local decisions (which boxes to watch, when to re-login).
The API stays the authority on every request.
"""

# -------------------- Standard library imports --------------------
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# -------------------- Third-party imports --------------------
import httpx
import jwt

# -------------------- Local application imports --------------------
from escalada_client.commands.fetch import request_with_retry, response_detail
from escalada_client.errors import AuthRequiredError, CommandRejected, TransientCommandError

logger = logging.getLogger(__name__)


def read_claims(token: str) -> Dict[str, Any]:
    """Return the token's claims, or {} when it is not a decodable JWT."""
    try:
        return jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        logger.debug("Auth token is not a readable JWT")
        return {}


class AuthSession:
    def __init__(
        self,
        token: Optional[str] = None,
        *,
        role: Optional[str] = None,
        boxes: Optional[list[int]] = None,
    ):
        self.token: Optional[str] = None
        self.username: Optional[str] = None
        self.role: Optional[str] = None
        self.boxes: list[int] = []
        self.expires_at: Optional[datetime] = None
        if token:
            self.set_token(token, role=role, boxes=boxes)

    @classmethod
    def from_token(cls, token: Optional[str]) -> "AuthSession":
        return cls(token)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)

    def set_token(
        self,
        token: str,
        *,
        role: Optional[str] = None,
        boxes: Optional[list[int]] = None,
    ) -> None:
        claims = read_claims(token)
        self.token = token
        self.username = claims.get("sub")
        self.role = role or claims.get("role")
        raw_boxes = boxes if boxes is not None else claims.get("boxes") or []
        self.boxes = [int(b) for b in raw_boxes if isinstance(b, int) and not isinstance(b, bool)]
        exp = claims.get("exp")
        self.expires_at = (
            datetime.fromtimestamp(exp, tz=timezone.utc) if isinstance(exp, (int, float)) else None
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    def can_access_box(self, box_id: int) -> bool:
        """Mirror of the API's box check: admins see everything, others only assigned boxes."""
        if self.role == "admin":
            return True
        return box_id in self.boxes

    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def clear(self) -> None:
        if self.token:
            logger.warning("Clearing auth session for %s", self.username or "unknown user")
        self.token = None
        self.username = None
        self.role = None
        self.boxes = []
        self.expires_at = None

    async def login(
        self,
        http: httpx.AsyncClient,
        api_base: str,
        username: str,
        password: str,
        *,
        timeout: float = 5.0,
    ) -> Dict[str, Any]:
        """POST /auth/login and adopt the returned token (single attempt, no retry)."""
        response = await request_with_retry(
            http,
            "POST",
            f"{api_base}/auth/login",
            json={"username": username, "password": password},
            retries=1,
            timeout=timeout,
            command_type="LOGIN",
        )
        if response.status_code in (401, 403):
            self.clear()
            raise AuthRequiredError("LOGIN", detail=response_detail(response), status_code=response.status_code)
        if response.status_code >= 500:
            raise TransientCommandError("LOGIN", detail=response_detail(response), status_code=response.status_code)
        if response.status_code >= 400:
            raise CommandRejected("LOGIN", detail=response_detail(response), status_code=response.status_code)

        data = response.json()
        self.set_token(data["access_token"], role=data.get("role"), boxes=data.get("boxes"))
        logger.info("Logged in as %s (role=%s)", self.username or username, self.role)
        return data


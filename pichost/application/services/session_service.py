import base64
import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from ..ports.session_repo import SessionRepository
from ...exceptions import SessionNotFoundError, UnauthorizedError

logger = logging.getLogger(__name__)

TOKEN_BYTES = 16


def create_token() -> str:
    """128 random bits, base64 without padding."""
    return base64.b64encode(secrets.token_bytes(TOKEN_BYTES)).decode("ascii").rstrip("=")


@dataclass
class SessionService:
    session_repo: SessionRepository
    life_time_sec: int

    def open_session(self, authorized: bool) -> str:
        """Create a session for a caller whose credentials were accepted."""
        if not authorized:
            raise UnauthorizedError("Invalid credential")
        token = create_token()
        self.session_repo.create_session(token)
        logger.info("Session created")
        return token

    def validate_session(self, token: Optional[str]) -> bool:
        if not token:
            return False
        # Stale sessions are evicted lazily, right before every check.
        self.session_repo.expire_sessions(self.life_time_sec)
        try:
            self.session_repo.has_session(token)
        except SessionNotFoundError:
            return False
        return True

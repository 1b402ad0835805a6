from datetime import datetime
from typing import Protocol


class SessionRepository(Protocol):
    def create_session(self, token: str) -> None:
        ...

    def has_session(self, token: str) -> datetime:
        """Return the authentication time, or raise SessionNotFoundError."""
        ...

    def expire_sessions(self, life_time_sec: int) -> int:
        ...

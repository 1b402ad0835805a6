# pichost/db/models/auth/session.py
from sqlmodel import SQLModel, Field


class SessionRecord(SQLModel, table=True):
    __tablename__ = "sessions"
    token: str = Field(primary_key=True)
    # Unix seconds, UTC
    auth_time: int = Field(index=True)

# pichost/db/models/media/post.py
from typing import Optional
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, ForeignKey, Integer, Text


class PostRecord(SQLModel, table=True):
    __tablename__ = "posts"
    id: Optional[int] = Field(default=None, primary_key=True)
    description: str = Field(default="", sa_column=Column("desc", Text))
    # Unix seconds, UTC
    upload_time: int = Field(index=True)
    album_id: Optional[int] = Field(
        default=None,
        sa_column=Column("album", Integer, ForeignKey("albums.id")),
    )

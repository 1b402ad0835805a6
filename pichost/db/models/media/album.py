# pichost/db/models/media/album.py
from typing import Optional
from sqlmodel import SQLModel, Field


class Album(SQLModel, table=True):
    __tablename__ = "albums"
    id: Optional[int] = Field(default=None, primary_key=True)
    title: Optional[str] = Field(default=None)

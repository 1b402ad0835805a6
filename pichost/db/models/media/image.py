# pichost/db/models/media/image.py
from typing import Optional
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, ForeignKey, Integer


class ImageRecord(SQLModel, table=True):
    __tablename__ = "images"
    id: Optional[int] = Field(default=None, primary_key=True)
    # Relative to the image root, e.g. "a/a1b2....jpg"
    path: str = Field(index=True)
    width: int
    height: int
    post_id: Optional[int] = Field(
        default=None,
        sa_column=Column("post", Integer, ForeignKey("posts.id"), index=True),
    )

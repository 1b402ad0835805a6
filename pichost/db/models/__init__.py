# Models package (re-export feature modules for stable imports)
from .media.album import Album
from .media.post import PostRecord
from .media.image import ImageRecord
from .auth.session import SessionRecord

__all__ = [
    "Album",
    "PostRecord",
    "ImageRecord",
    "SessionRecord",
]

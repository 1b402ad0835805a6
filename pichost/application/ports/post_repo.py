from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import List, Optional, Protocol


THUMBNAIL_SUFFIX = "_t"


def thumbnail_path_for(path: str) -> str:
    """``a/abc.jpg`` -> ``a/abc_t.jpg``"""
    p = PurePosixPath(path)
    return str(p.with_name(f"{p.stem}{THUMBNAIL_SUFFIX}{p.suffix}"))


@dataclass(frozen=True)
class Image:
    # Relative to the image root
    path: str
    width: int
    height: int

    @property
    def thumbnail_path(self) -> str:
        return thumbnail_path_for(self.path)


@dataclass
class Post:
    id: Optional[int] = None
    desc: str = ""
    upload_time: datetime = field(default_factory=lambda: datetime.fromtimestamp(0, tz=timezone.utc))
    images: List[Image] = field(default_factory=list)
    album_id: Optional[int] = None


class PostOrder(Enum):
    NEW_FIRST = "new_first"


class PostRepository(Protocol):
    def add_post(self, post: Post, album_id: Optional[int] = None) -> int:
        ...

    def find_post_by_id(self, post_id: int) -> Optional[Post]:
        ...

    def get_posts(self, start: int, count: int, order: PostOrder = PostOrder.NEW_FIRST) -> List[Post]:
        ...

    def count_posts(self) -> int:
        ...

    def delete_post(self, post_id: int) -> None:
        ...

    def count_image_references(self, path: str) -> int:
        ...

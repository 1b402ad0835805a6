import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Tuple, Union

from fastapi import UploadFile
from fastapi.concurrency import run_in_threadpool

from ..pipeline import ingest_upload
from ..ports.post_repo import Image, Post, PostOrder, PostRepository
from ..ports.transcoder import Transcoder
from ...config import Settings
from ...exceptions import (
    ClientInputError,
    InvalidDescriptionError,
    MissingFilenameError,
    PostNotFoundError,
    UnauthorizedError,
    UnrecognizedPartError,
)
from ...media_utils import discard_unreferenced, remove_image_files

logger = logging.getLogger(__name__)

DESC_PART = "Desc"
FILE_PART = "FileToUpload"

FormPart = Tuple[str, Union[str, UploadFile]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PostPage:
    posts: List[Post]
    total: int
    next_start: Optional[int]
    prev_start: Optional[int]


@dataclass
class PostService:
    post_repo: PostRepository
    transcoder: Transcoder
    settings: Settings
    clock: Callable[[], datetime] = field(default=_utc_now)

    async def create_post(self, parts: Iterable[FormPart], authorized: bool,
                          album_id: Optional[int] = None) -> Post:
        """Build a post from multipart form parts, e.g. ``form.multi_items()``.

        Every ``FileToUpload`` part runs through the image pipeline. If any
        part fails, images already stored for this post are discarded and
        nothing is persisted.
        """
        if not authorized:
            raise UnauthorizedError("Uploading requires an authenticated session")

        desc = ""
        images: List[Image] = []
        try:
            for name, value in parts:
                logger.debug(f"Got part: {name}, {getattr(value, 'filename', None) or '<no filename>'}")
                if name == DESC_PART:
                    desc = await self._read_description(value)
                elif name == FILE_PART:
                    if isinstance(value, str):
                        raise MissingFilenameError("No filename in upload")
                    images.append(await ingest_upload(value, self.settings, self.transcoder, self.post_repo))
                else:
                    raise UnrecognizedPartError(f"Unrecognized part: {name}")

            post = Post(desc=desc, upload_time=self.clock(), images=images, album_id=album_id)
            post.id = await run_in_threadpool(self.post_repo.add_post, post, album_id)
        except ClientInputError as e:
            logger.warning(f"Rejected upload: {e.detail}")
            await run_in_threadpool(self._discard_unpersisted, images)
            raise
        except BaseException:
            await run_in_threadpool(self._discard_unpersisted, images)
            raise

        logger.info(f"Created post {post.id} with {len(images)} image(s)")
        return post

    @staticmethod
    async def _read_description(value: Union[str, UploadFile]) -> str:
        if isinstance(value, str):
            return value
        data = await value.read()
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidDescriptionError("Invalid description") from e

    def _discard_unpersisted(self, images: List[Image]) -> None:
        for image in images:
            discard_unreferenced(self.settings.IMAGE_DIR, image, self.post_repo)

    async def delete_post(self, post_id: int, authorized: bool) -> Post:
        if not authorized:
            raise UnauthorizedError("Deleting requires an authenticated session")
        return await run_in_threadpool(self._delete_post, post_id)

    def _delete_post(self, post_id: int) -> Post:
        post = self.post_repo.find_post_by_id(post_id)
        if post is None:
            raise PostNotFoundError(f"Post {post_id} not found")
        logger.info(f"Deleting post {post_id}...")
        self.post_repo.delete_post(post_id)
        for image in post.images:
            # Identical uploads share one file
            if self.post_repo.count_image_references(image.path) > 0:
                logger.info(f"Keeping image file {image.path}, still used by another post")
                continue
            logger.info(f"Deleting image file at {image.path}...")
            remove_image_files(self.settings.IMAGE_DIR, image)
        return post

    async def get_post(self, post_id: int) -> Post:
        post = await run_in_threadpool(self.post_repo.find_post_by_id, post_id)
        if post is None:
            raise PostNotFoundError(f"Post {post_id} not found")
        return post

    async def list_posts(self, start: int = 0, page_size: int = 16) -> PostPage:
        if start < 0 or page_size <= 0:
            raise ValueError("Invalid page parameters")
        total = await run_in_threadpool(self.post_repo.count_posts)
        posts = await run_in_threadpool(self.post_repo.get_posts, start, page_size, PostOrder.NEW_FIRST)
        next_start = start + page_size if total > start + page_size else None
        prev_start = max(start - page_size, 0) if start > 0 else None
        return PostPage(posts=posts, total=total, next_start=next_start, prev_start=prev_start)

"""Stages of the upload pipeline.

Each stage value owns the files it points at. Calling the next stage consumes
it: on success the files are handed over to the returned value, on failure
the stage removes everything it owned or created before re-raising. A stage
value can only be consumed once.

    RawImage -> ResizedImage -> ImageWithThumbnail -> PlacedImage
             -> RelativeImage -> Image
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from ..ports.post_repo import Image
from ..ports.transcoder import Transcoder
from ...config import Settings
from ...exceptions import PathEscapeError, PipelineStateError, StorageIOError
from ...media_utils import absolute_image_path, bucket_for, library_filenames, remove_quietly

logger = logging.getLogger(__name__)


class _Stage:
    def _consume(self) -> None:
        if getattr(self, "_consumed", False):
            raise PipelineStateError(f"{type(self).__name__} was already consumed")
        self._consumed = True


def _sibling(path: str, tag: str, extension: str) -> str:
    stem = os.path.splitext(path)[0]
    return f"{stem}-{tag}.{extension}"


@dataclass
class RawImage(_Stage):
    """An upload saved to a temp file inside the image root."""
    path: str
    hash: str
    original_filename: str

    def resize(self, settings: Settings, transcoder: Transcoder) -> "ResizedImage":
        self._consume()
        target = _sibling(self.path, "processed", settings.image_extension)
        try:
            transcoder.resize(self.path, target, settings.IMAGE_PIXEL_SIZE, settings.IMAGE_ENCODING_QUALITY)
        except BaseException:
            remove_quietly(self.path, target)
            raise
        return ResizedImage(path=target, hash=self.hash, upload_path=self.path)


@dataclass
class ResizedImage(_Stage):
    path: str
    hash: str
    # The original upload, kept until the thumbnail exists
    upload_path: str

    def make_thumbnail(self, settings: Settings, transcoder: Transcoder) -> "ImageWithThumbnail":
        self._consume()
        thumbnail = _sibling(self.upload_path, "thumb", settings.image_extension)
        try:
            transcoder.resize(self.path, thumbnail, settings.THUMB_PIXEL_SIZE, settings.IMAGE_ENCODING_QUALITY)
        except BaseException:
            remove_quietly(self.path, thumbnail, self.upload_path)
            raise
        remove_quietly(self.upload_path)
        return ImageWithThumbnail(path=self.path, thumbnail_path=thumbnail, hash=self.hash)


@dataclass
class ImageWithThumbnail(_Stage):
    path: str
    thumbnail_path: str
    hash: str

    def move_to_library(self, settings: Settings) -> "PlacedImage":
        """Rename both files to their content-addressed location.

        os.replace is atomic on one filesystem, so readers never see a
        partially written file at the final path.
        """
        self._consume()
        subdir = os.path.join(settings.IMAGE_DIR, bucket_for(self.hash))
        image_name, thumbnail_name = library_filenames(self.hash, settings.image_extension)
        image_file = os.path.join(subdir, image_name)
        thumbnail_file = os.path.join(subdir, thumbnail_name)

        # Library files this call brought into existence. A path that was
        # already there belongs to an earlier upload of the same content.
        created = []
        try:
            os.makedirs(subdir, exist_ok=True)
            for source, target in ((self.path, image_file), (self.thumbnail_path, thumbnail_file)):
                existed = os.path.exists(target)
                logger.debug(f"Moving image {source} --> {target}...")
                os.replace(source, target)
                if not existed:
                    created.append(target)
        except OSError as e:
            remove_quietly(self.path, self.thumbnail_path, *created)
            raise StorageIOError(f"Failed to move image into library: {e}") from e
        except BaseException:
            remove_quietly(self.path, self.thumbnail_path, *created)
            raise
        return PlacedImage(path=image_file, thumbnail_path=thumbnail_file, hash=self.hash)


@dataclass
class PlacedImage(_Stage):
    path: str
    thumbnail_path: str
    hash: str

    def make_relative_path(self, settings: Settings) -> "RelativeImage":
        self._consume()
        try:
            root = Path(settings.IMAGE_DIR).resolve(strict=True)
            full_path = Path(self.path).resolve(strict=True)
        except (OSError, RuntimeError) as e:
            remove_quietly(self.path, self.thumbnail_path)
            raise StorageIOError(f"Failed to canonicalize path {self.path}: {e}") from e

        try:
            relative = full_path.relative_to(root)
        except ValueError as e:
            remove_quietly(full_path, self.thumbnail_path)
            raise PathEscapeError(f"Image {full_path} is not in the image directory.") from e
        return RelativeImage(path=relative.as_posix(), thumbnail_path=self.thumbnail_path)


@dataclass
class RelativeImage(_Stage):
    # Relative to the image root
    path: str
    thumbnail_path: str

    def probe_metadata(self, settings: Settings, transcoder: Transcoder) -> Image:
        self._consume()
        image_path = absolute_image_path(settings.IMAGE_DIR, self.path)
        try:
            metadata = transcoder.probe(image_path)
        except BaseException:
            # A post must never reference an image of unknown size.
            remove_quietly(image_path, self.thumbnail_path)
            raise
        return Image(path=self.path, width=metadata.width, height=metadata.height)

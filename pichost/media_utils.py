import logging
import os
from typing import Optional, Tuple, Union

from .application.ports.post_repo import THUMBNAIL_SUFFIX, Image, PostRepository
from .exceptions import DataError

logger = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]


def remove_quietly(*paths: Optional[PathLike]) -> None:
    """Best-effort removal of files left behind by a failed stage.

    Failures are logged and never raised so the original error is not masked.
    """
    for path in paths:
        if path is None:
            continue
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to remove file at {path}: {e}")


def bucket_for(content_hash: str) -> str:
    """Sub directory of the image root holding a given hash."""
    return content_hash[:1]


def library_filenames(content_hash: str, extension: str) -> Tuple[str, str]:
    """Return the (image, thumbnail) file names for a content hash."""
    return f"{content_hash}.{extension}", f"{content_hash}{THUMBNAIL_SUFFIX}.{extension}"


def absolute_image_path(image_dir: str, relative_path: str) -> str:
    return os.path.join(image_dir, relative_path)


def remove_image_files(image_dir: str, image: Image) -> None:
    """Remove a stored image and its thumbnail."""
    remove_quietly(
        absolute_image_path(image_dir, image.path),
        absolute_image_path(image_dir, image.thumbnail_path),
    )


def discard_unreferenced(image_dir: str, image: Image,
                         post_repo: Optional[PostRepository] = None) -> bool:
    """Remove the files of an image no stored post uses.

    Identical uploads share one file, so the files stay while any image row
    still points at the path. Without a repository the files are removed.
    Returns whether the files were removed.
    """
    if post_repo is not None:
        try:
            in_use = post_repo.count_image_references(image.path) > 0
        except DataError as e:
            logger.error(f"Keeping {image.path}, could not check references: {e}")
            return False
        if in_use:
            logger.info(f"Keeping image file {image.path}, still used by another post")
            return False
    remove_image_files(image_dir, image)
    return True

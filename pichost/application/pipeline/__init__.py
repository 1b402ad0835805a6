import asyncio
import logging
from typing import Optional, Set

from fastapi import UploadFile
from fastapi.concurrency import run_in_threadpool

from .stages import (
    ImageWithThumbnail,
    PlacedImage,
    RawImage,
    RelativeImage,
    ResizedImage,
)
from .temp_writer import save_to_temp
from ..ports.post_repo import Image, PostRepository
from ..ports.transcoder import Transcoder
from ...config import Settings
from ...media_utils import discard_unreferenced

logger = logging.getLogger(__name__)

# Cleanups of cancelled uploads whose worker thread has not finished yet
_pending_discards: Set["asyncio.Future[None]"] = set()


def process_raw_image(raw: RawImage, settings: Settings, transcoder: Transcoder) -> Image:
    """Run every blocking stage. Meant for a worker thread."""
    return (
        raw.resize(settings, transcoder)
        .make_thumbnail(settings, transcoder)
        .move_to_library(settings)
        .make_relative_path(settings)
        .probe_metadata(settings, transcoder)
    )


async def _discard_when_done(worker: "asyncio.Future[Image]", image_dir: str,
                             post_repo: Optional[PostRepository]) -> None:
    try:
        image = await worker
    except Exception:
        # Failed stages already cleaned up after themselves.
        return
    logger.info(f"Upload was cancelled, discarding {image.path}")
    await run_in_threadpool(discard_unreferenced, image_dir, image, post_repo)


async def drain_pending_discards() -> None:
    """Wait until every cancelled upload has been cleaned up."""
    while _pending_discards:
        await asyncio.gather(*list(_pending_discards), return_exceptions=True)


async def ingest_upload(upload: UploadFile, settings: Settings, transcoder: Transcoder,
                        post_repo: Optional[PostRepository] = None) -> Image:
    """Turn one uploaded file into a stored image.

    ``post_repo`` is consulted when a cancelled upload is cleaned up, so
    files an existing post shares with it are kept.
    """
    raw = await save_to_temp(upload, settings.IMAGE_DIR, settings.UPLOAD_BYTES_MAX, settings.UPLOAD_CHUNK_SIZE)
    worker = asyncio.ensure_future(run_in_threadpool(process_raw_image, raw, settings, transcoder))
    try:
        # The worker thread cannot be interrupted, so let it finish and
        # throw its result away if the caller goes away.
        return await asyncio.shield(worker)
    except asyncio.CancelledError:
        discard = asyncio.ensure_future(_discard_when_done(worker, settings.IMAGE_DIR, post_repo))
        _pending_discards.add(discard)
        discard.add_done_callback(_pending_discards.discard)
        raise


__all__ = [
    "RawImage",
    "ResizedImage",
    "ImageWithThumbnail",
    "PlacedImage",
    "RelativeImage",
    "save_to_temp",
    "process_raw_image",
    "ingest_upload",
    "drain_pending_discards",
]

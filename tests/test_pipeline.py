import asyncio
import os
import threading

import pytest
from PIL import Image as PILImage

from pichost.application.pipeline import (
    ImageWithThumbnail,
    PlacedImage,
    RawImage,
    drain_pending_discards,
    ingest_upload,
    process_raw_image,
)
from pichost.application.pipeline import stages
from pichost.application.ports.post_repo import Post
from pichost.exceptions import (
    PathEscapeError,
    PipelineStateError,
    StorageIOError,
    TranscoderError,
    TranscoderOutputError,
)
from pichost.infrastructure.transcoder import PillowTranscoder


def _raw(image_dir, data, content_hash="12345", name="test.png"):
    path = image_dir / f"temp-{content_hash}.png"
    path.write_bytes(data)
    return RawImage(path=str(path), hash=content_hash, original_filename=name)


def _size(path):
    with PILImage.open(path) as img:
        return img.size


class BrokenProbe(PillowTranscoder):
    def probe(self, path):
        raise TranscoderOutputError("Invalid width")


class GatedProbe(PillowTranscoder):
    """Blocks the worker thread inside probe until released."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def probe(self, path):
        self.entered.set()
        self.release.wait(10)
        return super().probe(path)


class FailingThumbnail(PillowTranscoder):
    def __init__(self):
        self.calls = 0

    def resize(self, input_path, output_path, max_dimension, quality):
        self.calls += 1
        if self.calls == 2:
            with open(output_path, "wb") as f:
                f.write(b"partial")
            raise TranscoderError("thumbnail failed")
        super().resize(input_path, output_path, max_dimension, quality)


def test_pipeline_wont_grow_small_image(settings, image_dir, png_bytes):
    image = process_raw_image(_raw(image_dir, png_bytes((400, 296))), settings, PillowTranscoder())

    assert image.path == "1/12345.jpg"
    assert (image.width, image.height) == (400, 296)


def test_pipeline_shrinks_large_image_and_thumbnails(settings, image_dir, png_bytes, list_files):
    image = process_raw_image(_raw(image_dir, png_bytes((3000, 2000)), "abcdef"), settings, PillowTranscoder())

    assert image.path == "a/abcdef.jpg"
    assert image.thumbnail_path == "a/abcdef_t.jpg"
    assert (image.width, image.height) == (1280, 853)
    assert _size(image_dir / "a" / "abcdef_t.jpg") == (256, 171)
    # Temp, resized and thumbnail intermediates are all gone.
    assert list_files(image_dir) == ["a/abcdef.jpg", "a/abcdef_t.jpg"]


def test_small_max_dimension(settings, image_dir, png_bytes):
    settings.IMAGE_PIXEL_SIZE = 256
    image = process_raw_image(_raw(image_dir, png_bytes((400, 296))), settings, PillowTranscoder())
    assert (image.width, image.height) == (256, 189)


def test_png_encoding_uses_png_extension(settings, image_dir, png_bytes):
    from pichost.config import ImageEncoding
    settings.IMAGE_ENCODING = ImageEncoding.PNG
    image = process_raw_image(_raw(image_dir, png_bytes((20, 10))), settings, PillowTranscoder())
    assert image.path == "1/12345.png"
    assert image.thumbnail_path == "1/12345_t.png"


def test_stage_cannot_be_consumed_twice(settings, image_dir, png_bytes):
    raw = _raw(image_dir, png_bytes((20, 20)))
    raw.resize(settings, PillowTranscoder())
    with pytest.raises(PipelineStateError):
        raw.resize(settings, PillowTranscoder())


def test_resize_failure_removes_source_and_target(settings, image_dir, list_files):
    raw = _raw(image_dir, b"definitely not an image")
    with pytest.raises(TranscoderError):
        raw.resize(settings, PillowTranscoder())
    assert list_files(image_dir) == []


def test_thumbnail_failure_removes_everything(settings, image_dir, png_bytes, list_files):
    transcoder = FailingThumbnail()
    resized = _raw(image_dir, png_bytes((50, 50))).resize(settings, transcoder)
    with pytest.raises(TranscoderError):
        resized.make_thumbnail(settings, transcoder)
    assert list_files(image_dir) == []


def test_move_failure_removes_touched_paths(settings, image_dir, monkeypatch, list_files):
    image = image_dir / "temp-x-processed.jpg"
    thumb = image_dir / "temp-x-thumb.jpg"
    image.write_bytes(b"img")
    thumb.write_bytes(b"thumb")
    real_replace = os.replace
    calls = []

    def flaky_replace(src, dst):
        calls.append(dst)
        if len(calls) == 2:
            raise OSError("disk full")
        real_replace(src, dst)

    monkeypatch.setattr(stages.os, "replace", flaky_replace)
    with pytest.raises(StorageIOError):
        ImageWithThumbnail(path=str(image), thumbnail_path=str(thumb), hash="fff").move_to_library(settings)
    monkeypatch.undo()
    assert list_files(image_dir) == []


def test_path_outside_root_is_rejected(settings, image_dir, tmp_path):
    outside = tmp_path / "outside.jpg"
    outside_thumb = tmp_path / "outside_t.jpg"
    outside.write_bytes(b"img")
    outside_thumb.write_bytes(b"thumb")

    placed = PlacedImage(path=str(outside), thumbnail_path=str(outside_thumb), hash="000")
    with pytest.raises(PathEscapeError):
        placed.make_relative_path(settings)
    assert not outside.exists()
    assert not outside_thumb.exists()


def test_vanished_file_is_rejected(settings, image_dir):
    placed = PlacedImage(path=str(image_dir / "0" / "gone.jpg"), thumbnail_path=str(image_dir / "0" / "gone_t.jpg"), hash="0")
    with pytest.raises(StorageIOError):
        placed.make_relative_path(settings)


def test_corrupt_file_fails_probe_and_leaves_nothing(settings, image_dir, png_bytes, list_files):
    transcoder = PillowTranscoder()
    relative = (
        _raw(image_dir, png_bytes((64, 64)), "beef")
        .resize(settings, transcoder)
        .make_thumbnail(settings, transcoder)
        .move_to_library(settings)
        .make_relative_path(settings)
    )
    (image_dir / "b" / "beef.jpg").write_bytes(b"corrupted")

    with pytest.raises(TranscoderError):
        relative.probe_metadata(settings, transcoder)
    assert list_files(image_dir) == []


@pytest.mark.asyncio
async def test_ingest_same_content_twice_same_path(settings, png_bytes, make_upload):
    data = png_bytes((300, 200))
    first = await ingest_upload(make_upload(data, "one.png"), settings, PillowTranscoder())
    second = await ingest_upload(make_upload(data, "two.png"), settings, PillowTranscoder())
    assert first.path == second.path
    assert (first.width, first.height) == (300, 200)


@pytest.mark.asyncio
async def test_ingest_probe_failure_surfaces_and_cleans_up(settings, image_dir, png_bytes, make_upload, list_files):
    with pytest.raises(TranscoderOutputError):
        await ingest_upload(make_upload(png_bytes((30, 20))), settings, BrokenProbe())
    assert list_files(image_dir) == []


def test_move_failure_keeps_files_of_earlier_identical_upload(settings, image_dir, monkeypatch):
    bucket = image_dir / "f"
    bucket.mkdir()
    (bucket / "fff.jpg").write_bytes(b"img")
    image = image_dir / "temp-y-processed.jpg"
    thumb = image_dir / "temp-y-thumb.jpg"
    image.write_bytes(b"img")
    thumb.write_bytes(b"thumb")
    real_replace = os.replace

    def flaky_replace(src, dst):
        if str(dst).endswith("_t.jpg"):
            raise OSError("disk full")
        real_replace(src, dst)

    monkeypatch.setattr(stages.os, "replace", flaky_replace)
    with pytest.raises(StorageIOError):
        ImageWithThumbnail(path=str(image), thumbnail_path=str(thumb), hash="fff").move_to_library(settings)
    monkeypatch.undo()

    assert (bucket / "fff.jpg").read_bytes() == b"img"
    assert not thumb.exists()


async def _cancel_during_probe(upload, settings, transcoder, post_repo=None):
    task = asyncio.ensure_future(ingest_upload(upload, settings, transcoder, post_repo))
    while not transcoder.entered.is_set():
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    transcoder.release.set()
    await drain_pending_discards()


@pytest.mark.asyncio
async def test_cancelled_ingest_leaves_no_files(settings, image_dir, png_bytes, make_upload, list_files):
    await _cancel_during_probe(make_upload(png_bytes((300, 200))), settings, GatedProbe())
    assert list_files(image_dir) == []


@pytest.mark.asyncio
async def test_cancelled_ingest_keeps_files_used_by_a_post(settings, image_dir, data_manager, png_bytes,
                                                          make_upload, list_files):
    data = png_bytes((300, 200))
    stored = await ingest_upload(make_upload(data), settings, PillowTranscoder())
    data_manager.add_post(Post(desc="first", images=[stored]))

    await _cancel_during_probe(make_upload(data), settings, GatedProbe(), data_manager)

    assert data_manager.count_image_references(stored.path) == 1
    assert list_files(image_dir) == sorted([stored.path, stored.thumbnail_path])


@pytest.mark.asyncio
async def test_cancelled_ingest_without_post_removes_shared_path(settings, image_dir, data_manager, png_bytes,
                                                                make_upload, list_files):
    await _cancel_during_probe(make_upload(png_bytes((30, 20))), settings, GatedProbe(), data_manager)
    assert list_files(image_dir) == []

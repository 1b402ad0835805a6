import io

import pytest
from fastapi import UploadFile
from PIL import Image

from pichost.config import ImageEncoding, Settings
from pichost.database import DataManager


@pytest.fixture
def image_dir(tmp_path):
    path = tmp_path / "images"
    path.mkdir()
    return path


@pytest.fixture
def settings(tmp_path, image_dir):
    return Settings(
        DATA_DIR=str(tmp_path),
        DATABASE_URL="sqlite://",
        IMAGE_DIR=str(image_dir),
        IMAGE_PIXEL_SIZE=1280,
        THUMB_PIXEL_SIZE=256,
        IMAGE_ENCODING=ImageEncoding.JPEG,
        IMAGE_ENCODING_QUALITY=90,
        TRANSCODER="pillow",
    )


@pytest.fixture
def data_manager():
    manager = DataManager("sqlite://")
    manager.connect()
    manager.init()
    yield manager
    manager.dispose()


@pytest.fixture
def png_bytes():
    def make(size, color=(200, 30, 30)) -> bytes:
        buf = io.BytesIO()
        Image.new("RGB", size, color).save(buf, format="PNG")
        return buf.getvalue()
    return make


@pytest.fixture
def make_upload():
    def make(data: bytes, filename="photo.png") -> UploadFile:
        return UploadFile(file=io.BytesIO(data), filename=filename)
    return make


def stored_files(root):
    return sorted(p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file())


@pytest.fixture
def list_files():
    return stored_files

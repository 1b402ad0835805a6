import logging
import os

from PIL import Image

from ...application.ports.transcoder import ImageMetadata, Transcoder
from ...exceptions import TranscoderError

logger = logging.getLogger(__name__)

_FORMATS = {
    ".jpg": "JPEG",
    ".jpeg": "JPEG",
    ".png": "PNG",
    ".avif": "AVIF",
    ".webp": "WEBP",
}
_LOSSY = {"JPEG", "AVIF", "WEBP"}

SUPPORTED_EXTENSIONS = frozenset(ext.lstrip(".") for ext in _FORMATS)


def _format_for(path: str) -> str:
    ext = os.path.splitext(str(path))[1].lower()
    fmt = _FORMATS.get(ext)
    if fmt is None:
        raise TranscoderError(f"Pillow cannot encode {ext or 'extension-less'} files")
    return fmt


class PillowTranscoder(Transcoder):
    """In-process transcoder. Resamples in the file's own colour space.

    Cannot encode JPEG XL; that encoding needs the magick transcoder.
    """

    def resize(self, input_path: str, output_path: str, max_dimension: int, quality: int) -> None:
        fmt = _format_for(output_path)
        try:
            with Image.open(input_path) as img:
                if fmt == "JPEG" and img.mode not in ("RGB", "L"):
                    img = img.convert("RGB")
                # thumbnail() never enlarges and keeps the aspect ratio
                img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
                save_kwargs = {"quality": quality} if fmt in _LOSSY else {}
                img.save(output_path, format=fmt, **save_kwargs)
        except TranscoderError:
            raise
        except Exception as e:
            logger.error(f"Error resizing {input_path}: {e}")
            raise TranscoderError(f"Pillow failed to resize image: {e}") from e

    def probe(self, path: str) -> ImageMetadata:
        try:
            with Image.open(path) as img:
                img.load()
                width, height = img.size
        except Exception as e:
            raise TranscoderError(f"Pillow failed to read image {path}: {e}") from e
        return ImageMetadata(width=width, height=height)

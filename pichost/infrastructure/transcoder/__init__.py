from ...application.ports.transcoder import Transcoder
from ...config import Settings
from .imagemagick_transcoder import MagickTranscoder
from .pillow_transcoder import SUPPORTED_EXTENSIONS, PillowTranscoder


def get_transcoder(settings: Settings) -> Transcoder:
    name = settings.TRANSCODER.lower()
    if name == "magick":
        return MagickTranscoder(binary=settings.MAGICK_BINARY)
    if name == "pillow":
        # Fail at startup rather than on every upload
        if settings.image_extension not in SUPPORTED_EXTENSIONS:
            raise ValueError(
                f"The pillow transcoder cannot encode {settings.IMAGE_ENCODING.value}, use TRANSCODER=magick"
            )
        return PillowTranscoder()
    raise ValueError(f"Unknown transcoder: {settings.TRANSCODER}")


__all__ = ["MagickTranscoder", "PillowTranscoder", "get_transcoder"]

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class ImageMetadata:
    width: int
    height: int


class Transcoder(Protocol):
    def resize(self, input_path: str, output_path: str, max_dimension: int, quality: int) -> None:
        """Downscale to fit in max_dimension x max_dimension. Never upscales."""
        ...

    def probe(self, path: str) -> ImageMetadata:
        ...

import logging
import subprocess
from typing import List

from ...application.ports.transcoder import ImageMetadata, Transcoder
from ...exceptions import (
    TranscoderExitError,
    TranscoderOutputError,
    TranscoderSignalError,
    TranscoderSpawnError,
)

logger = logging.getLogger(__name__)

PROBE_FORMAT = "%[fx:w]\n%[fx:h]\n"


class MagickTranscoder(Transcoder):
    """Runs the ImageMagick command line tool in a child process."""

    def __init__(self, binary: str = "magick") -> None:
        self.binary = binary

    def _run(self, args: List[str], action: str) -> bytes:
        cmd = [self.binary, *args]
        logger.debug(f"Running {' '.join(cmd)!r}")
        try:
            result = subprocess.run(cmd, capture_output=True, check=False)
        except OSError as e:
            raise TranscoderSpawnError(f"Failed to run {self.binary}: {e}") from e

        if result.returncode < 0:
            signal_number = -result.returncode
            raise TranscoderSignalError(f"{action} terminated with signal {signal_number}.", signal_number)
        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise TranscoderExitError(
                f"{action} failed with code {result.returncode}: {stderr}",
                result.returncode,
                stderr,
            )
        return result.stdout

    def resize(self, input_path: str, output_path: str, max_dimension: int, quality: int) -> None:
        # Scale in linear RGB, then convert back to sRGB for output.
        self._run([
            str(input_path),
            "-colorspace", "RGB",
            "-resize", f"{max_dimension}x{max_dimension}>",
            "-colorspace", "sRGB",
            "-quality", str(quality),
            str(output_path),
        ], "Resize")

    def probe(self, path: str) -> ImageMetadata:
        stdout = self._run(["identify", "-format", PROBE_FORMAT, str(path)], "Identify")
        try:
            output = stdout.decode("utf-8")
        except UnicodeDecodeError as e:
            raise TranscoderOutputError("Invalid UTF-8 in imagemagick output") from e

        # Multi-frame images print one pair per frame; the first frame wins.
        lines = output.splitlines()
        if len(lines) < 2:
            raise TranscoderOutputError("Not enough lines in imagemagick output")
        try:
            width = int(lines[0].strip())
        except ValueError as e:
            raise TranscoderOutputError(f"Invalid width: {lines[0]!r}") from e
        try:
            height = int(lines[1].strip())
        except ValueError as e:
            raise TranscoderOutputError(f"Invalid height: {lines[1]!r}") from e
        return ImageMetadata(width=width, height=height)

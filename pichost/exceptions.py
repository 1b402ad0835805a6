import logging
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class PicHostError(Exception):
    """Base class for every error raised by the ingestion core."""

    kind = "internal"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


# --- Client input -----------------------------------------------------------

class ClientInputError(PicHostError):
    """The request itself is wrong. Not a server fault."""

    kind = "bad_request"


class MissingFilenameError(ClientInputError):
    pass


class UnrecognizedPartError(ClientInputError):
    pass


class InvalidDescriptionError(ClientInputError):
    pass


class UploadTooLargeError(ClientInputError):
    kind = "too_large"


class UnauthorizedError(ClientInputError):
    kind = "unauthorized"


# --- Storage ----------------------------------------------------------------

class StorageIOError(PicHostError):
    kind = "storage_io"


class PathEscapeError(StorageIOError):
    """A stored file resolved to a location outside the image root."""


# --- External transcoder ----------------------------------------------------

class TranscoderError(PicHostError):
    kind = "transcoder"


class TranscoderSpawnError(TranscoderError):
    pass


class TranscoderExitError(TranscoderError):
    def __init__(self, detail: str, returncode: int, stderr: str = ""):
        super().__init__(detail)
        self.returncode = returncode
        self.stderr = stderr


class TranscoderSignalError(TranscoderError):
    def __init__(self, detail: str, signal_number: int):
        super().__init__(detail)
        self.signal_number = signal_number


class TranscoderOutputError(TranscoderError):
    pass


# --- Persistence ------------------------------------------------------------

class DataError(PicHostError):
    kind = "data"


class NotConnectedError(DataError):
    pass


class PoolExhaustedError(DataError):
    kind = "unavailable"


class RowCountMismatchError(DataError):
    def __init__(self, detail: str, expected: int, actual: Optional[int]):
        super().__init__(detail)
        self.expected = expected
        self.actual = actual


class PostNotFoundError(DataError):
    kind = "not_found"


class SessionNotFoundError(DataError):
    kind = "not_found"


# --- Pipeline ---------------------------------------------------------------

class PipelineStateError(PicHostError):
    """A pipeline stage value was consumed more than once."""


# --- HTTP boundary ----------------------------------------------------------

STATUS_CODES = {
    "bad_request": 400,
    "unauthorized": 401,
    "not_found": 404,
    "too_large": 413,
    "unavailable": 503,
}


def create_error_response(error_message: str) -> dict:
    """Create a standardized error response"""
    return {
        "success": False,
        "data": None,
        "error": error_message,
    }


async def pichost_exception_handler(request: Request, exc: PicHostError) -> JSONResponse:
    status_code = STATUS_CODES.get(exc.kind, 500)
    if status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.detail}")
        # Server faults are not described to the client
        message = "Internal server error"
    else:
        message = exc.detail
    return JSONResponse(status_code=status_code, content=create_error_response(message))

# We get the version from a sub-file that can be automatically generated.
from ._version import __version__
from .adapter import (
    Adapter,
    ChunkFailed,
    ChunkSent,
    Data,
    Done,
    Ok,
    Payload,
    Sent,
    TooLarge,
)
from .exceptions import (
    AdapterError,
    ChunkError,
    FileError,
    MalformedMultipartError,
    MalformedRequestError,
    ResponseAlreadySentError,
    StaleTokenError,
    TransmissionError,
)
from .multipart import Binary, File, PartHeaders, Skip, Upload
from .socket_adapter import SocketAdapter
from .testing import RecordingAdapter

__all__ = (
    "__version__",
    "Adapter",
    "AdapterError",
    "Binary",
    "ChunkError",
    "ChunkFailed",
    "ChunkSent",
    "Data",
    "Done",
    "File",
    "FileError",
    "MalformedMultipartError",
    "MalformedRequestError",
    "Ok",
    "PartHeaders",
    "Payload",
    "RecordingAdapter",
    "ResponseAlreadySentError",
    "Sent",
    "Skip",
    "SocketAdapter",
    "StaleTokenError",
    "TooLarge",
    "TransmissionError",
    "Upload",
)

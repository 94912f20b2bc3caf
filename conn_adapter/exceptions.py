from __future__ import annotations


class AdapterError(Exception):
    """Base error class for everything raised by a connection adapter."""


class TransmissionError(AdapterError, OSError):
    """Raised when the transport fails while sending or receiving.  The
    connection must be treated as dead afterwards.
    """


class ParseError(AdapterError, ValueError):
    """This exception (or a subclass) is raised when there is an error while
    parsing something coming off the wire.
    """

    #: This is the offset in the input data chunk (*NOT* the overall stream) in
    #: which the parse error occurred.  It will be -1 if not specified.
    offset = -1


class MalformedMultipartError(ParseError):
    """Raised when the boundary or header framing of a multipart body is
    corrupt.
    """


class MalformedRequestError(ParseError):
    """Raised when the request line, the request headers or the chunked
    framing of a request body cannot be parsed.
    """


class DecodeError(ParseError):
    """This exception is raised when there is a decoding error - for example
    with the Base64Decoder or QuotedPrintableDecoder.
    """


class ChunkError(AdapterError):
    """A single chunk of a chunked response could not be sent."""


class ResponseAlreadySentError(AdapterError):
    """A response was already sent (or begun) on this connection."""


class StaleTokenError(AdapterError):
    """A payload was used after a later call already consumed it."""


class FileError(AdapterError, OSError):
    """Exception class for problems opening or reading files."""

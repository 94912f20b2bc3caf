"""Adapter over a connected, blocking ``socket.socket``.

The server that accepted the connection owns the socket: it sets timeouts,
and it closes the socket when it is done.  This adapter only reads the
request off it and writes the response onto it.
"""

from __future__ import annotations

import http.client
import string
from typing import TYPE_CHECKING

from .adapter import Adapter, ConnState
from .exceptions import MalformedRequestError, TransmissionError
from .headers import encode_head, get_all_headers

if TYPE_CHECKING:  # pragma: no cover
    import socket
    from typing import BinaryIO, Protocol

    from .adapter import AdapterConfig, Payload
    from .headers import Headers

    class BodyReader(Protocol):
        def read(self, limit: int) -> bytes: ...


HEXDIGITS = frozenset(string.hexdigits.encode("ascii"))


class _EmptyBody:
    def read(self, limit: int) -> bytes:
        return b""


class _FixedLengthBody:
    """A body delimited by ``Content-Length``."""

    def __init__(self, rfile: BinaryIO, length: int) -> None:
        self.rfile = rfile
        self.remaining = length

    def read(self, limit: int) -> bytes:
        if self.remaining == 0:
            return b""

        data = self.rfile.read1(min(limit, self.remaining))  # type: ignore[attr-defined]
        if not data:
            raise TransmissionError("Connection closed with %d bytes of request body unread" % (self.remaining,))

        self.remaining -= len(data)
        return data


class _ChunkedBody:
    """A body sent with ``Transfer-Encoding: chunked``.  Chunk extensions
    and trailers are read and thrown away.
    """

    def __init__(self, rfile: BinaryIO, max_line: int) -> None:
        self.rfile = rfile
        self.max_line = max_line
        self.chunk_left = 0
        self.done = False

    def _readline(self) -> bytes:
        line = self.rfile.readline(self.max_line + 1)
        if len(line) > self.max_line:
            raise MalformedRequestError("Chunk framing line is longer than %d bytes" % (self.max_line,))
        if not line.endswith(b"\n"):
            raise TransmissionError("Connection closed inside chunked request body")
        return line

    def read(self, limit: int) -> bytes:
        if self.done:
            return b""

        if self.chunk_left == 0:
            line = self._readline()
            size = line.split(b";", 1)[0].strip()
            if not size or not HEXDIGITS.issuperset(size):
                raise MalformedRequestError("Invalid chunk size line: %r" % (line,))

            self.chunk_left = int(size, 16)
            if self.chunk_left == 0:
                # Skip trailers up to the blank line.
                while self._readline().strip():
                    pass
                self.done = True
                return b""

        data = self.rfile.read1(min(limit, self.chunk_left))  # type: ignore[attr-defined]
        if not data:
            raise TransmissionError("Connection closed with %d bytes of a chunk unread" % (self.chunk_left,))

        self.chunk_left -= len(data)
        if self.chunk_left == 0:
            crlf = self.rfile.read(2)
            if len(crlf) < 2:
                raise TransmissionError("Connection closed inside chunked request body")
            if crlf != b"\r\n":
                raise MalformedRequestError("Missing CRLF after chunk data")

        return data


def _body_reader(rfile: BinaryIO, headers: Headers, max_line: int) -> BodyReader:
    """Picks the framing of the request body from its headers."""
    transfer_encoding = ",".join(get_all_headers(headers, "transfer-encoding"))
    if transfer_encoding:
        codings = [c.strip().lower() for c in transfer_encoding.split(",") if c.strip()]
        if codings and codings[-1] == "chunked":
            return _ChunkedBody(rfile, max_line)
        raise MalformedRequestError("Unsupported Transfer-Encoding: %r" % (transfer_encoding,))

    lengths = set(v.strip() for v in get_all_headers(headers, "content-length"))
    if not lengths:
        return _EmptyBody()
    if len(lengths) > 1:
        raise MalformedRequestError("Conflicting Content-Length headers: %r" % (sorted(lengths),))

    length = lengths.pop()
    if not length.isdigit():
        raise MalformedRequestError("Invalid Content-Length: %r" % (length,))
    return _FixedLengthBody(rfile, int(length))


class SocketState(ConnState):
    def __init__(
        self,
        sock: socket.socket,
        rfile: BinaryIO,
        method: str,
        req_headers: Headers,
        max_line: int,
        target: str = "*",
        version: str = "HTTP/1.1",
    ) -> None:
        super().__init__(method, req_headers)
        self.sock = sock
        self.rfile = rfile
        self.target = target
        self.version = version
        self.body = _body_reader(rfile, self.req_headers, max_line)


class SocketAdapter(Adapter):
    """Production adapter: talks HTTP/1.1 over a connected socket."""

    DEFAULT_CONFIG: AdapterConfig = {
        **Adapter.DEFAULT_CONFIG,
        "MAX_REQUEST_LINE": 8 * 1024,
    }

    state_class = SocketState

    def payload(
        self, sock: socket.socket, method: str, headers: Headers, rfile: BinaryIO | None = None, target: str = "*"
    ) -> Payload:
        """Builds the first payload for a request whose head was already read
        by the server.  ``rfile`` must be positioned at the start of the
        body; by default a new buffered reader is made from ``sock``.
        """
        if rfile is None:
            rfile = sock.makefile("rb")
        state = SocketState(sock, rfile, method, headers, self.config["MAX_REQUEST_LINE"], target=target)
        return self._reissue(state)

    def read_request(self, sock: socket.socket) -> Payload:
        """Reads the request line and headers from ``sock`` and returns the
        first payload for the request.
        """
        rfile = sock.makefile("rb")
        max_line = self.config["MAX_REQUEST_LINE"]

        try:
            line = rfile.readline(max_line + 1)
            # Blank lines ahead of the request line are allowed (RFC 7230, 3.5).
            while line in (b"\r\n", b"\n"):
                line = rfile.readline(max_line + 1)

            if len(line) > max_line:
                raise MalformedRequestError("Request line is longer than %d bytes" % (max_line,))
            if not line:
                raise TransmissionError("Connection closed before the request line")

            message = http.client.parse_headers(rfile)
        except http.client.HTTPException as exc:
            self.logger.warning("Error reading request headers: %s", exc)
            raise MalformedRequestError("Error reading request headers: %s" % (exc,)) from exc
        except TransmissionError:
            raise
        except OSError as exc:
            raise TransmissionError("Error reading request: %s" % (exc,)) from exc

        parts = line.decode("latin-1").split()
        if len(parts) != 3 or not parts[2].startswith("HTTP/"):
            msg = "Malformed request line: %r" % (line,)
            self.logger.warning(msg)
            raise MalformedRequestError(msg)

        method, target, version = parts
        headers = list(message.items())
        self.logger.info("Read request %s %s (%d headers)", method, target, len(headers))

        state = SocketState(sock, rfile, method, headers, max_line, target=target, version=version)
        return self._reissue(state)

    def _read_body(self, state: ConnState, limit: int) -> bytes:
        assert isinstance(state, SocketState)
        try:
            return state.body.read(limit)
        except TransmissionError:
            raise
        except OSError as exc:
            self.logger.warning("Error reading request body: %s", exc)
            raise TransmissionError("Error reading request body: %s" % (exc,)) from exc

    def _send(self, state: SocketState, data: bytes) -> None:
        try:
            state.sock.sendall(data)
        except OSError as exc:
            self.logger.warning("Error sending %d bytes: %s", len(data), exc)
            raise TransmissionError("Error sending response: %s" % (exc,)) from exc

    def _write_resp(self, state: ConnState, status: int, headers: Headers, body: bytes) -> None:
        assert isinstance(state, SocketState)
        self._send(state, encode_head(status, headers))
        if body and not state.is_head:
            self._send(state, body)
        return None

    def _write_file(self, state: ConnState, status: int, headers: Headers, fileobj: BinaryIO, size: int) -> None:
        assert isinstance(state, SocketState)
        self._send(state, encode_head(status, headers))
        if size and not state.is_head:
            try:
                state.sock.sendfile(fileobj, 0, size)
            except OSError as exc:
                self.logger.warning("Error sending file: %s", exc)
                raise TransmissionError("Error sending file: %s" % (exc,)) from exc
        return None

    def _write_chunked_head(self, state: ConnState, status: int, headers: Headers) -> None:
        assert isinstance(state, SocketState)
        self._send(state, encode_head(status, headers))

    def _write_chunk(self, state: ConnState, data: bytes) -> None:
        assert isinstance(state, SocketState)
        # An empty frame would end the response.
        if state.is_head or not data:
            return None

        self._send(state, b"%X\r\n%s\r\n" % (len(data), data))
        return None

    def _write_chunked_end(self, state: ConnState) -> None:
        assert isinstance(state, SocketState)
        if not state.is_head:
            self._send(state, b"0\r\n\r\n")

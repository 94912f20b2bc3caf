"""The connection adapter contract.

An :class:`Adapter` is what an HTTP application talks to when it wants to
read the request body or send a response.  The application never sees the
connection itself, only a :class:`Payload`: every adapter call consumes the
payload it is given and hands back a fresh one, and a payload that has been
consumed is dead.  Using it again raises :class:`StaleTokenError`.

The public operations are implemented here once, on top of a handful of
transport hooks (``_read_body``, ``_write_resp`` and friends) that concrete
adapters provide.  See :mod:`conn_adapter.socket_adapter` and
:mod:`conn_adapter.testing`.
"""

from __future__ import annotations

import abc
import logging
import os
from enum import IntEnum
from typing import TYPE_CHECKING, NamedTuple

from .exceptions import (
    ChunkError,
    FileError,
    MalformedMultipartError,
    ResponseAlreadySentError,
    StaleTokenError,
    TransmissionError,
)
from .headers import check_headers, get_header, has_header, parse_options_header
from .multipart import MultipartFormParser

if TYPE_CHECKING:  # pragma: no cover
    from typing import BinaryIO, TypedDict

    from .headers import Headers
    from .multipart import Classifier, Params

    class AdapterConfig(TypedDict, total=False):
        MAX_HEADER_SIZE: int
        UPLOAD_ERROR_ON_BAD_CTE: bool
        FILE_CHUNK_SIZE: int
        MAX_REQUEST_LINE: int


class ResponseState(IntEnum):
    UNSET = 0
    SENT = 1
    CHUNKED = 2
    CHUNKED_DONE = 3


class ConnState:
    """Adapter-owned state shared by every payload of one request."""

    def __init__(self, method: str, req_headers: Headers) -> None:
        self.method = method.upper()
        self.req_headers: Headers = list(req_headers)
        self.response = ResponseState.UNSET
        self.body_done = False

    @property
    def is_head(self) -> bool:
        return self.method == "HEAD"

    def __repr__(self) -> str:
        return "%s(method=%r, response=%s)" % (self.__class__.__name__, self.method, self.response.name)


class Payload:
    """Opaque, single-use handle on an in-flight request."""

    __slots__ = ("_state", "_spent")

    def __init__(self, state: ConnState) -> None:
        self._state = state
        self._spent = False

    @property
    def spent(self) -> bool:
        return self._spent

    @property
    def state(self) -> ConnState:
        """The adapter's connection state.  Meant for adapters and tests, not
        for application code.
        """
        return self._state

    def __repr__(self) -> str:
        return "%s(state=%r, spent=%r)" % (self.__class__.__name__, self._state, self._spent)


class Data(NamedTuple):
    data: bytes
    payload: Payload


class Done(NamedTuple):
    payload: Payload


class Sent(NamedTuple):
    payload: Payload
    body: bytes | None


class ChunkSent(NamedTuple):
    payload: Payload
    body: bytes | None


class ChunkFailed(NamedTuple):
    reason: ChunkError
    payload: Payload


class Ok(NamedTuple):
    params: Params
    payload: Payload


class TooLarge(NamedTuple):
    payload: Payload


class Adapter(abc.ABC):
    """Base class for connection adapters.

    Subclasses implement the transport hooks, including what ``HEAD`` means
    for them.  Payload reissue and the response state live here so every
    adapter enforces the same rules.
    """

    DEFAULT_CONFIG: AdapterConfig = {
        "MAX_HEADER_SIZE": 16 * 1024,
        "UPLOAD_ERROR_ON_BAD_CTE": False,
        "FILE_CHUNK_SIZE": 64 * 1024,
    }

    #: The ConnState subclass this adapter's payloads carry.
    state_class: type[ConnState] = ConnState

    def __init__(self, config: AdapterConfig = {}) -> None:
        self.logger = logging.getLogger(type(self).__module__)
        self.config: AdapterConfig = self.DEFAULT_CONFIG.copy()
        self.config.update(config)

    # Payload bookkeeping.

    def _resolve(self, payload: Payload) -> ConnState:
        if not isinstance(payload, Payload):
            raise TypeError("Expected a Payload, not %r" % (payload,))

        state = payload._state
        if not isinstance(state, self.state_class):
            raise TypeError("%r was not created by %s" % (payload, self.__class__.__name__))

        if payload._spent:
            raise StaleTokenError("This payload was already consumed; use the payload returned by the last call")

        return state

    def _checkout(self, payload: Payload) -> ConnState:
        state = self._resolve(payload)
        payload._spent = True
        return state

    def _reissue(self, state: ConnState) -> Payload:
        return Payload(state)

    @staticmethod
    def _check_limit(limit: int) -> None:
        if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1:
            raise ValueError("limit must be a positive integer, not %r" % (limit,))

    def _ensure_unsent(self, state: ConnState) -> None:
        if state.response != ResponseState.UNSET:
            msg = "A response was already sent on this connection (%s)" % (state.response.name.lower(),)
            self.logger.warning(msg)
            raise ResponseAlreadySentError(msg)

    @staticmethod
    def _with_content_length(headers: Headers, length: int) -> Headers:
        headers = list(headers)
        if not has_header(headers, "content-length"):
            headers.append(("content-length", str(length)))
        return headers

    # Transport hooks.

    @abc.abstractmethod
    def _read_body(self, state: ConnState, limit: int) -> bytes:
        """Returns 1 to ``limit`` bytes of unread request body, or ``b""``
        once the body is exhausted.
        """

    @abc.abstractmethod
    def _write_resp(self, state: ConnState, status: int, headers: Headers, body: bytes) -> bytes | None: ...

    @abc.abstractmethod
    def _write_file(
        self, state: ConnState, status: int, headers: Headers, fileobj: BinaryIO, size: int
    ) -> bytes | None: ...

    @abc.abstractmethod
    def _write_chunked_head(self, state: ConnState, status: int, headers: Headers) -> None: ...

    @abc.abstractmethod
    def _write_chunk(self, state: ConnState, data: bytes) -> bytes | None: ...

    @abc.abstractmethod
    def _write_chunked_end(self, state: ConnState) -> None: ...

    # The contract.

    def send_resp(self, payload: Payload, status: int, headers: Headers, body: bytes) -> Sent:
        """Sends the given status, headers and body as the response.

        For ``HEAD`` requests the body is not transmitted; the call still
        succeeds.  The returned ``Sent.body`` is ``None`` for transports that
        do not keep what they sent.

        Headers that cannot go on the wire raise :class:`ValueError` before
        the payload is consumed.
        """
        headers = list(headers)
        check_headers(headers)
        state = self._checkout(payload)
        self._ensure_unsent(state)
        state.response = ResponseState.SENT

        self.logger.info("Sending %d response with %d byte body", status, len(body))
        sent = self._write_resp(state, status, self._with_content_length(headers, len(body)), body)
        return Sent(self._reissue(state), sent)

    def send_file(self, payload: Payload, status: int, headers: Headers, path: str | os.PathLike[str]) -> Sent:
        """Like :meth:`send_resp`, with the body streamed from ``path``."""
        headers = list(headers)
        check_headers(headers)
        state = self._resolve(payload)
        self._ensure_unsent(state)

        try:
            fileobj = open(path, "rb")
        except OSError:
            self.logger.exception("Error opening file %r", path)
            raise FileError("Error opening file: %r" % (path,))

        with fileobj:
            self._checkout(payload)
            size = os.fstat(fileobj.fileno()).st_size
            state.response = ResponseState.SENT

            self.logger.info("Sending %d response from file %r (%d bytes)", status, path, size)
            sent = self._write_file(state, status, self._with_content_length(headers, size), fileobj, size)
        return Sent(self._reissue(state), sent)

    def send_chunked(self, payload: Payload, status: int, headers: Headers) -> Payload:
        """Sends the status and headers that start a chunked response."""
        headers = list(headers)
        check_headers(headers)
        state = self._checkout(payload)
        self._ensure_unsent(state)
        state.response = ResponseState.CHUNKED

        if not has_header(headers, "transfer-encoding"):
            headers.append(("transfer-encoding", "chunked"))

        self.logger.info("Starting chunked %d response", status)
        self._write_chunked_head(state, status, headers)
        return self._reissue(state)

    def chunk(self, payload: Payload, data: bytes) -> ChunkSent | ChunkFailed:
        """Sends one chunk of a response begun with :meth:`send_chunked`.

        Failures come back as :class:`ChunkFailed` rather than being raised;
        the caller decides whether to give up on the response.
        """
        state = self._checkout(payload)
        token = self._reissue(state)

        if state.response != ResponseState.CHUNKED:
            reason = ChunkError("No chunked response in progress (response is %s)" % (state.response.name.lower(),))
            self.logger.warning("%s", reason)
            return ChunkFailed(reason, token)

        try:
            sent = self._write_chunk(state, data)
        except TransmissionError as exc:
            reason = ChunkError("Failed to send chunk: %s" % (exc,))
            reason.__cause__ = exc
            self.logger.warning("%s", reason)
            return ChunkFailed(reason, token)

        return ChunkSent(token, sent)

    def end_chunked(self, payload: Payload) -> Payload:
        """Sends the terminating chunk and closes the chunked response."""
        state = self._checkout(payload)
        if state.response != ResponseState.CHUNKED:
            raise ChunkError("No chunked response in progress (response is %s)" % (state.response.name.lower(),))

        self._write_chunked_end(state)
        state.response = ResponseState.CHUNKED_DONE
        return self._reissue(state)

    def stream_req_body(self, payload: Payload, limit: int) -> Data | Done:
        """Returns up to ``limit`` bytes of the request body as :class:`Data`,
        or :class:`Done` once it has all been read.  :class:`Done` is
        returned again on every later call.
        """
        self._check_limit(limit)
        state = self._checkout(payload)

        if state.body_done:
            return Done(self._reissue(state))

        data = self._read_body(state, limit)
        if not data:
            self.logger.debug("Request body exhausted")
            state.body_done = True
            return Done(self._reissue(state))

        if len(data) > limit:
            msg = "Transport returned %d bytes for a %d byte read" % (len(data), limit)
            self.logger.error(msg)
            raise TransmissionError(msg)

        self.logger.debug("Read %d bytes of request body", len(data))
        return Data(data, self._reissue(state))

    def parse_req_multipart(self, payload: Payload, limit: int, classify: Classifier) -> Ok | TooLarge:
        """Parses a multipart request body.

        ``limit`` is both the size of each read and the budget for the whole
        body; going over it stops parsing at once and returns
        :class:`TooLarge`, after which the connection should not be reused.
        ``classify`` is called with each part's headers before its body is
        read and decides whether it is kept in memory, written to a file or
        skipped.
        """
        self._check_limit(limit)
        state = self._checkout(payload)
        token = self._reissue(state)

        content_type = get_header(state.req_headers, "content-type")
        ctype, options = parse_options_header(content_type)
        boundary = options.get(b"boundary")
        if not ctype.startswith(b"multipart/") or not boundary:
            msg = "No multipart boundary given in Content-Type %r" % (content_type,)
            self.logger.warning(msg)
            raise MalformedMultipartError(msg)

        form = MultipartFormParser(
            boundary,
            classify,
            config={
                "MAX_HEADER_SIZE": self.config["MAX_HEADER_SIZE"],
                "UPLOAD_ERROR_ON_BAD_CTE": self.config["UPLOAD_ERROR_ON_BAD_CTE"],
            },
        )

        consumed = 0
        try:
            while True:
                result = self.stream_req_body(token, limit)
                token = result.payload
                if isinstance(result, Done):
                    break

                consumed += len(result.data)
                if consumed > limit:
                    self.logger.warning("Multipart body is over the %d byte limit", limit)
                    return TooLarge(token)

                form.write(result.data)

            params = form.finalize()
        finally:
            form.close()

        return Ok(params, token)

    def __repr__(self) -> str:
        return "%s()" % self.__class__.__name__

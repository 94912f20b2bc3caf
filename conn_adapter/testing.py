"""An in-memory adapter for exercising application code without a socket.

The request body is given up front and everything the application sends is
recorded on the connection state::

    adapter = RecordingAdapter()
    token = adapter.payload("POST", [("content-type", "text/plain")], b"hello")
    result = app(adapter, token)
    assert result.payload.state.status == 200
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .adapter import Adapter, ConnState

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Iterable
    from typing import BinaryIO

    from .adapter import Payload
    from .headers import Headers


class RecordingState(ConnState):
    def __init__(self, method: str, req_headers: Iterable[tuple[str, str]], body: bytes) -> None:
        super().__init__(method, list(req_headers))
        self.req_body = body
        self.offset = 0

        # What was sent back.
        self.status: int | None = None
        self.resp_headers: Headers = []
        self.resp_body: bytes | None = None
        self.chunks: list[bytes] = []
        self.sent_file: str | None = None
        self.chunked_ended = False


class RecordingAdapter(Adapter):
    """Serves a canned request and keeps what the application sends.

    ``Sent.body`` and ``ChunkSent.body`` carry the bytes actually sent: the
    response body (empty for ``HEAD``) or every chunk so far, joined.
    """

    state_class = RecordingState

    def payload(self, method: str = "GET", headers: Iterable[tuple[str, str]] = (), body: bytes = b"") -> Payload:
        return self._reissue(RecordingState(method, headers, body))

    def _record(self, state: RecordingState, status: int, headers: Headers, body: bytes) -> None:
        state.status = status
        state.resp_headers = list(headers)
        state.resp_body = body

    def _read_body(self, state: ConnState, limit: int) -> bytes:
        assert isinstance(state, RecordingState)
        data = state.req_body[state.offset : state.offset + limit]
        state.offset += len(data)
        return data

    def _write_resp(self, state: ConnState, status: int, headers: Headers, body: bytes) -> bytes:
        assert isinstance(state, RecordingState)
        sent = b"" if state.is_head else body
        self._record(state, status, headers, sent)
        return sent

    def _write_file(self, state: ConnState, status: int, headers: Headers, fileobj: BinaryIO, size: int) -> bytes:
        assert isinstance(state, RecordingState)
        chunk_size = self.config["FILE_CHUNK_SIZE"]
        chunks = []
        if not state.is_head:
            while True:
                data = fileobj.read(chunk_size)
                if not data:
                    break
                chunks.append(data)

        sent = b"".join(chunks)
        self._record(state, status, headers, sent)
        state.sent_file = getattr(fileobj, "name", None)
        return sent

    def _write_chunked_head(self, state: ConnState, status: int, headers: Headers) -> None:
        assert isinstance(state, RecordingState)
        self._record(state, status, headers, b"")

    def _write_chunk(self, state: ConnState, data: bytes) -> bytes:
        assert isinstance(state, RecordingState)
        if data and not state.is_head:
            state.chunks.append(data)

        state.resp_body = b"".join(state.chunks)
        return state.resp_body

    def _write_chunked_end(self, state: ConnState) -> None:
        assert isinstance(state, RecordingState)
        state.chunked_ended = True

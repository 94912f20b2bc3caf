"""Streaming ``multipart/form-data`` parsing.

There are two layers here.  :class:`MultipartParser` is a push parser: bytes
are written to it in whatever pieces the transport hands over and it calls
back with header fields, header values and slices of part data as soon as
they are known.  :class:`MultipartFormParser` sits on top of it, asks a
classifier what to do with each part once its headers are complete
(:class:`Binary`, :class:`File` or :class:`Skip`), and builds the resulting
params.

Neither layer enforces a byte budget; that is done by whoever reads the
body (see :meth:`conn_adapter.adapter.Adapter.parse_req_multipart`).
"""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import TYPE_CHECKING, NamedTuple, cast

from .decoders import Base64Decoder, QuotedPrintableDecoder
from .exceptions import FileError, MalformedMultipartError
from .headers import get_header, parse_options_header

if TYPE_CHECKING:  # pragma: no cover
    import os
    from collections.abc import Callable, Iterator
    from typing import IO, Any, Literal, TypeAlias, TypedDict

    class MultipartCallbacks(TypedDict, total=False):
        on_part_begin: Callable[[], None]
        on_part_data: Callable[[bytes, int, int], None]
        on_part_end: Callable[[], None]
        on_header_begin: Callable[[], None]
        on_header_field: Callable[[bytes, int, int], None]
        on_header_value: Callable[[bytes, int, int], None]
        on_header_end: Callable[[], None]
        on_headers_finished: Callable[[], None]
        on_end: Callable[[], None]

    class MultipartConfig(TypedDict, total=False):
        MAX_HEADER_SIZE: int
        UPLOAD_ERROR_ON_BAD_CTE: bool

    CallbackName: TypeAlias = Literal[
        "part_begin",
        "part_data",
        "part_end",
        "header_begin",
        "header_field",
        "header_value",
        "header_end",
        "headers_finished",
        "end",
    ]

    Destination: TypeAlias = "str | os.PathLike[str] | IO[bytes]"
    SegmentDecision: TypeAlias = "Binary | File | Skip"
    Classifier: TypeAlias = "Callable[[PartHeaders], SegmentDecision]"
    ParamValue: TypeAlias = "bytes | Upload | list[bytes | Upload]"
    Params: TypeAlias = "dict[str, ParamValue]"


class MultipartState(IntEnum):
    """Parser states, in the order a well-formed body walks through them."""

    START = 0
    START_BOUNDARY = 1
    HEADER_FIELD_START = 2
    HEADER_FIELD = 3
    HEADER_VALUE_START = 4
    HEADER_VALUE = 5
    HEADER_VALUE_ALMOST_DONE = 6
    HEADERS_ALMOST_DONE = 7
    PART_DATA_START = 8
    PART_DATA = 9
    END_BOUNDARY = 10
    END = 11


# Set once a full boundary has been followed by CR (another part follows) or
# by a hyphen (this may be the closing boundary).
FLAG_PART_BOUNDARY = 1
FLAG_LAST_BOUNDARY = 2

CR = b"\r"[0]
LF = b"\n"[0]
COLON = b":"[0]
SPACE = b" "[0]
HYPHEN = b"-"[0]

# fmt: off
# Header names are HTTP tokens (RFC 7230, section 3.2.6).
TOKEN_CHARS_SET = frozenset(
    b"ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    b"abcdefghijklmnopqrstuvwxyz"
    b"0123456789"
    b"!#$%&'*+-.^_`|~")
# fmt: on


class Binary(NamedTuple):
    """Buffer the part in memory and bind it under ``name``."""

    name: str


class File(NamedTuple):
    """Stream the part into ``destination`` and bind an :class:`Upload`
    under ``name``.

    ``destination`` is either a path, which the parser opens, writes and
    closes, or a writable binary file object, which the parser only writes
    to.  Closing a file object passed in here is up to the caller.
    """

    name: str
    destination: Destination


class Skip:
    """Discard the part."""

    __slots__ = ()

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Skip)

    def __hash__(self) -> int:
        return hash(Skip)

    def __repr__(self) -> str:
        return "Skip()"


def _decode_option(value: bytes | None) -> str | None:
    if value is None:
        return None
    return value.decode("utf-8", "replace")


class PartHeaders:
    """The header block of one part, as handed to the classifier.

    ``headers`` keeps the raw ``(name, value)`` pairs in the order they were
    received.  ``name`` and ``filename`` come from ``Content-Disposition``;
    either may be ``None``.
    """

    def __init__(self, headers: list[tuple[str, str]]) -> None:
        self.headers = headers

        disposition, options = parse_options_header(self.get("Content-Disposition"))
        self.disposition = disposition.decode("latin-1") or None
        self.name = _decode_option(options.get(b"name"))
        self.filename = _decode_option(options.get(b"filename"))
        self.content_type = self.get("Content-Type")

    def get(self, name: str, default: str | None = None) -> str | None:
        return get_header(self.headers, name, default)

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(self.headers)

    def __len__(self) -> int:
        return len(self.headers)

    def __repr__(self) -> str:
        return "%s(name=%r, filename=%r, content_type=%r)" % (
            self.__class__.__name__,
            self.name,
            self.filename,
            self.content_type,
        )


class Upload:
    """Describes a part that was streamed to a :class:`File` destination."""

    def __init__(
        self,
        name: str,
        filename: str | None,
        content_type: str | None,
        destination: Destination,
        size: int,
    ) -> None:
        self.name = name
        self.filename = filename
        self.content_type = content_type
        self.destination = destination
        self.size = size

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Upload):
            return (
                self.name == other.name
                and self.filename == other.filename
                and self.content_type == other.content_type
                and self.destination == other.destination
                and self.size == other.size
            )
        else:
            return NotImplemented

    def __repr__(self) -> str:
        return "%s(name=%r, filename=%r, content_type=%r, size=%d)" % (
            self.__class__.__name__,
            self.name,
            self.filename,
            self.content_type,
            self.size,
        )


def put_param(params: Params, name: str, value: bytes | Upload) -> None:
    """Binds ``value`` under ``name``.  A ``name[]`` key collects values in a
    list under ``name``, in the order they arrive; any other key keeps the
    last value written.
    """
    if name.endswith("[]"):
        key = name[:-2]
        existing = params.get(key)
        if isinstance(existing, list):
            existing.append(value)
        else:
            params[key] = [value]
    else:
        params[name] = value


class MultipartParser:
    """This class implements a state machine that parses a multipart body.

    Valid callbacks (* indicates given data):
        - on_part_begin
        - on_part_data              *
        - on_part_end
        - on_header_begin
        - on_header_field           *
        - on_header_value           *
        - on_header_end
        - on_headers_finished
        - on_end

    Data callbacks receive ``(data, start, end)`` and must copy the slice
    they care about; the buffer is not kept.  Part data that might be the
    start of a boundary is held back until the next write resolves it.
    """

    def __init__(self, boundary: bytes | str, callbacks: MultipartCallbacks = {}) -> None:
        self.logger = logging.getLogger(__name__)
        self.state = MultipartState.START
        self.index = self.flags = 0

        self.callbacks = callbacks

        if isinstance(boundary, str):
            boundary = boundary.encode("latin-1")
        if not boundary:
            raise ValueError("boundary must not be empty")

        # Marks are positions of data not yet handed to a callback.  A
        # negative mark points into the boundary held back by a previous
        # write.
        self.marks: dict[str, int] = {}

        self.boundary = b"\r\n--" + boundary

    def callback(
        self, name: CallbackName, data: bytes | None = None, start: int | None = None, end: int | None = None
    ) -> None:
        on_name = "on_" + name
        func = self.callbacks.get(on_name)
        if func is None:
            return
        func = cast("Callable[..., Any]", func)
        if data is not None:
            if start is not None and start == end:
                return

            self.logger.debug("Calling %s with data[%d:%d]", on_name, start, end)
            func(data, start, end)
        else:
            self.logger.debug("Calling %s with no data", on_name)
            func()

    def set_callback(self, name: CallbackName, new_func: Callable[..., Any] | None) -> None:
        """Replaces a callback, or removes it when ``new_func`` is None."""
        if new_func is None:
            self.callbacks.pop("on_" + name, None)  # type: ignore[misc]
        else:
            self.callbacks["on_" + name] = new_func  # type: ignore[literal-required]

    def _error(self, msg: str, offset: int) -> MalformedMultipartError:
        self.logger.warning(msg)
        e = MalformedMultipartError(msg)
        e.offset = offset
        return e

    def write(self, data: bytes) -> int:
        """Feeds ``data`` through the state machine.  Always consumes all of
        it or raises.
        """
        return self._internal_write(data, len(data))

    def _internal_write(self, data: bytes, length: int) -> int:
        boundary = self.boundary

        # Work on locals; they are stored back once the whole chunk is done.
        state = self.state
        index = self.index
        flags = self.flags

        i = 0

        def set_mark(name: str) -> None:
            self.marks[name] = i

        def delete_mark(name: str) -> None:
            self.marks.pop(name, None)

        def data_callback(name: CallbackName, end_i: int, remaining: bool = False) -> None:
            # Emits everything from the mark up to end_i.  With 'remaining'
            # the mark is carried over to the next write instead of dropped.
            marked_index = self.marks.get(name)
            if marked_index is None:
                return

            if end_i <= marked_index:
                pass
            elif marked_index >= 0:
                self.callback(name, data, marked_index, end_i)
            else:
                # Replay the boundary prefix that the previous write held
                # back; it turned out to be part data after all.
                lookbehind_len = -marked_index
                if lookbehind_len <= len(boundary):
                    self.callback(name, boundary, 0, lookbehind_len)
                elif self.flags & FLAG_PART_BOUNDARY:
                    self.callback(name, boundary + b"\r\n", 0, lookbehind_len)
                elif self.flags & FLAG_LAST_BOUNDARY:
                    self.callback(name, boundary + b"--\r\n", 0, lookbehind_len)
                else:
                    raise self._error("Look-back buffer error", end_i)

                if end_i > 0:
                    self.callback(name, data, 0, end_i)

            if remaining:
                self.marks[name] = end_i - length
            else:
                self.marks.pop(name, None)

        while i < length:
            c = data[i]

            if state == MultipartState.START:
                # Leading blank lines are tolerated.
                if c == CR or c == LF:
                    i += 1
                    continue

                index = 0
                state = MultipartState.START_BOUNDARY
                i -= 1

            elif state == MultipartState.START_BOUNDARY:
                # The first boundary has no leading CRLF, hence the +2 offset
                # into self.boundary.
                if index == len(boundary) - 2:
                    if c == HYPHEN:
                        state = MultipartState.END_BOUNDARY
                    elif c != CR:
                        raise self._error("Did not find CR at end of boundary (%d)" % (i,), i)
                    index += 1

                elif index == len(boundary) - 2 + 1:
                    if c != LF:
                        raise self._error("Did not find LF at end of boundary (%d)" % (i,), i)

                    index = 0
                    self.callback("part_begin")
                    state = MultipartState.HEADER_FIELD_START

                else:
                    if c != boundary[index + 2]:
                        raise self._error(
                            "Expected boundary character %r, got %r at index %d" % (boundary[index + 2], c, index + 2),
                            i,
                        )
                    index += 1

            elif state == MultipartState.HEADER_FIELD_START:
                index = 0
                set_mark("header_field")
                if c != CR:
                    self.callback("header_begin")

                state = MultipartState.HEADER_FIELD
                i -= 1

            elif state == MultipartState.HEADER_FIELD:
                # A CR where a header name should start is the blank line
                # closing the header block.
                if c == CR and index == 0:
                    delete_mark("header_field")
                    state = MultipartState.HEADERS_ALMOST_DONE
                    i += 1
                    continue

                index += 1

                if c == COLON:
                    if index == 1:
                        raise self._error("Found 0-length header at %d" % (i,), i)

                    data_callback("header_field", i)
                    state = MultipartState.HEADER_VALUE_START

                elif c not in TOKEN_CHARS_SET:
                    raise self._error("Found invalid character %r in header at %d" % (c, i), i)

            elif state == MultipartState.HEADER_VALUE_START:
                if c == SPACE:
                    i += 1
                    continue

                set_mark("header_value")
                state = MultipartState.HEADER_VALUE
                i -= 1

            elif state == MultipartState.HEADER_VALUE:
                if c == CR:
                    data_callback("header_value", i)
                    self.callback("header_end")
                    state = MultipartState.HEADER_VALUE_ALMOST_DONE

            elif state == MultipartState.HEADER_VALUE_ALMOST_DONE:
                if c != LF:
                    raise self._error(f"Did not find LF character at end of header (found {c!r})", i)

                state = MultipartState.HEADER_FIELD_START

            elif state == MultipartState.HEADERS_ALMOST_DONE:
                if c != LF:
                    raise self._error(f"Did not find LF at end of headers (found {c!r})", i)

                self.callback("headers_finished")
                state = MultipartState.PART_DATA_START

            elif state == MultipartState.PART_DATA_START:
                set_mark("part_data")
                state = MultipartState.PART_DATA
                i -= 1

            elif state == MultipartState.PART_DATA:
                # 'index' counts how much of "\r\n--boundary" has matched so
                # far, possibly across writes.
                prev_index = index
                boundary_length = len(boundary)

                if index == 0:
                    # Fast path: look for the whole boundary at once.
                    i0 = data.find(boundary, i, length)
                    if i0 >= 0:
                        index = boundary_length - 1
                        i = i0 + boundary_length - 1
                    else:
                        # Only the tail can hold a partial boundary, so skip
                        # straight to it and look for a CR.
                        i = max(i, length - boundary_length)
                        while i < length - 1 and data[i] != boundary[0]:
                            i += 1

                c = data[i]

                if index < boundary_length:
                    if boundary[index] == c:
                        index += 1
                    else:
                        index = 0

                elif index == boundary_length:
                    index += 1
                    if c == CR:
                        flags |= FLAG_PART_BOUNDARY
                    elif c == HYPHEN:
                        flags |= FLAG_LAST_BOUNDARY
                    else:
                        index = 0

                elif index == boundary_length + 1:
                    if flags & FLAG_PART_BOUNDARY:
                        if c == LF:
                            flags &= ~FLAG_PART_BOUNDARY
                            data_callback("part_data", i - index)
                            self.callback("part_end")
                            self.callback("part_begin")
                            index = 0
                            state = MultipartState.HEADER_FIELD_START
                            i += 1
                            continue

                        index = 0
                        flags &= ~FLAG_PART_BOUNDARY

                    elif flags & FLAG_LAST_BOUNDARY:
                        if c == HYPHEN:
                            data_callback("part_data", i - index)
                            self.callback("part_end")
                            self.callback("end")
                            state = MultipartState.END
                        else:
                            index = 0
                            flags &= ~FLAG_LAST_BOUNDARY

                # A partial match fell through; the held-back bytes stay
                # marked as part data and this byte is looked at again.
                if index == 0 and prev_index > 0:
                    prev_index = 0
                    i -= 1

            elif state == MultipartState.END_BOUNDARY:
                # Only reached from START_BOUNDARY: "--boundary-" was seen
                # before any part.
                if index == len(boundary) - 2 + 1:
                    if c != HYPHEN:
                        raise self._error("Did not find - at end of boundary (%d)" % (i,), i)

                    index += 1
                    self.callback("end")
                    state = MultipartState.END

            elif state == MultipartState.END:
                # A trailing CRLF is normal; anything else is epilogue.
                if c == CR and i + 1 < length and data[i + 1] == LF:
                    i += 2
                    continue

                self.logger.warning("Skipping data after last boundary")
                i = length
                break

            else:  # pragma: no cover (error case)
                raise self._error("Reached an unknown state %d at %d" % (state, i), i)

            i += 1

        # Flush whatever is pending in this chunk, keeping the marks alive
        # for the next write.
        data_callback("header_field", length, True)
        data_callback("header_value", length, True)
        data_callback("part_data", length - index, True)

        self.state = state
        self.index = index
        self.flags = flags

        return length

    def finalize(self) -> None:
        """Checks the body ended on the closing boundary.  A body that never
        got past leading blank lines counts as empty.
        """
        if self.state not in (MultipartState.START, MultipartState.END):
            raise self._error("Multipart body ended before the closing boundary (state %d)" % (self.state,), -1)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(boundary={self.boundary!r})"


class _BufferSink:
    """Collects a :class:`Binary` part in memory."""

    def __init__(self) -> None:
        self._chunks: list[bytes] = []
        self.size = 0

    def write(self, data: bytes) -> int:
        self._chunks.append(data)
        self.size += len(data)
        return len(data)

    def finalize(self) -> None:
        pass

    @property
    def value(self) -> bytes:
        return b"".join(self._chunks)

    def close(self) -> None:
        self._chunks = []


class _FileSink:
    """Streams a :class:`File` part into its destination."""

    def __init__(self, destination: Destination) -> None:
        self.logger = logging.getLogger(__name__)
        self.size = 0

        self._fileobj: IO[bytes]
        if hasattr(destination, "write"):
            self._fileobj = cast("IO[bytes]", destination)
            self._owned = False
        else:
            path = cast("str | os.PathLike[str]", destination)
            try:
                self.logger.info("Opening file: %r", path)
                self._fileobj = open(path, "wb")
            except OSError:
                self.logger.exception("Error opening upload destination")
                raise FileError("Error opening upload destination: %r" % (path,))
            self._owned = True

    def write(self, data: bytes) -> int:
        bwritten = self._fileobj.write(data)
        if bwritten is not None and bwritten != len(data):
            self.logger.warning("bwritten != len(data) (%d != %d)", bwritten, len(data))
            self.size += bwritten
            return bwritten

        self.size += len(data)
        return len(data)

    def finalize(self) -> None:
        self._fileobj.flush()

    def close(self) -> None:
        if self._owned and not self._fileobj.closed:
            self._fileobj.close()


class MultipartFormParser:
    """Parses a multipart body into params, one classification per part.

    ``classify`` is called with the :class:`PartHeaders` of every part
    before any of its body is seen, and must return :class:`Binary`,
    :class:`File` or :class:`Skip`.  Feed the body with :meth:`write`, get
    the params from :meth:`finalize`, and always :meth:`close` the parser
    afterwards, including on errors, so a half-written destination file
    gets closed.
    """

    DEFAULT_CONFIG: MultipartConfig = {
        "MAX_HEADER_SIZE": 16 * 1024,
        # Error on invalid Content-Transfer-Encoding?
        "UPLOAD_ERROR_ON_BAD_CTE": False,
    }

    def __init__(self, boundary: bytes | str, classify: Classifier, config: MultipartConfig = {}) -> None:
        self.logger = logging.getLogger(__name__)
        self.classify = classify
        self.bytes_received = 0
        self.params: Params = {}

        self.config: MultipartConfig = self.DEFAULT_CONFIG.copy()
        self.config.update(config)

        self._part: PartHeaders | None = None
        self._decision: Binary | File | None = None
        self._sink: _BufferSink | _FileSink | None = None
        self._writer: _BufferSink | _FileSink | Base64Decoder | QuotedPrintableDecoder | None = None

        max_header_size = self.config["MAX_HEADER_SIZE"]
        header_name: list[bytes] = []
        header_value: list[bytes] = []
        headers: list[tuple[str, str]] = []
        header_size = 0

        def count_header_bytes(n: int) -> None:
            nonlocal header_size
            header_size += n
            if header_size > max_header_size:
                msg = "Part header block is larger than %d bytes" % (max_header_size,)
                self.logger.warning(msg)
                raise MalformedMultipartError(msg)

        def on_part_begin() -> None:
            nonlocal headers, header_size
            headers = []
            header_size = 0

        def on_header_field(data: bytes, start: int, end: int) -> None:
            count_header_bytes(end - start)
            header_name.append(data[start:end])

        def on_header_value(data: bytes, start: int, end: int) -> None:
            count_header_bytes(end - start)
            header_value.append(data[start:end])

        def on_header_end() -> None:
            headers.append((b"".join(header_name).decode("latin-1"), b"".join(header_value).decode("latin-1")))
            del header_name[:]
            del header_value[:]

        def on_headers_finished() -> None:
            self._start_part(PartHeaders(headers))

        def on_part_data(data: bytes, start: int, end: int) -> None:
            if self._writer is not None:
                self._writer.write(data[start:end])

        def on_part_end() -> None:
            self._finish_part()

        self.parser = MultipartParser(
            boundary,
            callbacks={
                "on_part_begin": on_part_begin,
                "on_part_data": on_part_data,
                "on_part_end": on_part_end,
                "on_header_field": on_header_field,
                "on_header_value": on_header_value,
                "on_header_end": on_header_end,
                "on_headers_finished": on_headers_finished,
            },
        )

    def _start_part(self, part: PartHeaders) -> None:
        decision = self.classify(part)

        if isinstance(decision, Binary):
            sink: _BufferSink | _FileSink | None = _BufferSink()
        elif isinstance(decision, File):
            sink = _FileSink(decision.destination)
        elif isinstance(decision, Skip):
            self.logger.debug("Skipping part %r", part)
            return
        else:
            raise TypeError("classify() must return Binary, File or Skip, not %r" % (decision,))

        self._part = part
        self._decision = decision
        self._sink = sink

        transfer_encoding = (part.get("Content-Transfer-Encoding") or "7bit").strip().lower()

        if transfer_encoding in ("binary", "8bit", "7bit"):
            self._writer = sink
        elif transfer_encoding == "base64":
            self._writer = Base64Decoder(sink)
        elif transfer_encoding == "quoted-printable":
            self._writer = QuotedPrintableDecoder(sink)
        else:
            self.logger.warning("Unknown Content-Transfer-Encoding: %r", transfer_encoding)
            if self.config["UPLOAD_ERROR_ON_BAD_CTE"]:
                raise MalformedMultipartError(f'Unknown Content-Transfer-Encoding "{transfer_encoding}"')
            self._writer = sink

    def _finish_part(self) -> None:
        part, decision, sink, writer = self._part, self._decision, self._sink, self._writer
        if sink is None:
            return

        assert part is not None and decision is not None and writer is not None
        try:
            writer.finalize()
            if isinstance(decision, Binary):
                value: bytes | Upload = cast(_BufferSink, sink).value
            else:
                value = Upload(decision.name, part.filename, part.content_type, decision.destination, sink.size)
        finally:
            self.close()

        self.logger.debug("Binding %d bytes under %r", sink.size, decision.name)
        put_param(self.params, decision.name, value)

    def write(self, data: bytes) -> int:
        self.bytes_received += len(data)
        return self.parser.write(data)

    def finalize(self) -> Params:
        self.parser.finalize()
        return self.params

    def close(self) -> None:
        """Releases the part in flight, if any.  Safe to call repeatedly."""
        if self._sink is not None:
            self._sink.close()
        self._part = self._decision = self._sink = self._writer = None

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(parser={self.parser!r}, bytes_received={self.bytes_received!r})"

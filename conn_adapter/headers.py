"""Helpers for the ordered ``(name, value)`` header lists passed across the
adapter boundary, and for rendering a response head onto the wire.

Header lists keep the caller's order and spelling.  Lookups are
case-insensitive; nothing here ever reorders or folds duplicates.
"""

from __future__ import annotations

from email.message import Message
from http import HTTPStatus
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Iterable
    from typing import TypeAlias

    Headers: TypeAlias = "list[tuple[str, str]]"


def parse_options_header(value: str | bytes | None) -> tuple[bytes, dict[bytes, bytes]]:
    """Parses a Content-Type or Content-Disposition header into a value in
    the following format: ``(content_type, {parameters})``.
    """
    # Uses email.message.Message to parse the header as described in PEP 594.
    if not value:
        return (b"", {})

    if isinstance(value, bytes):
        value = value.decode("latin-1")

    # No options, so return the value as-is.
    if ";" not in value:
        return (value.lower().strip().encode("latin-1"), {})

    message = Message()
    message["content-type"] = value
    params = message.get_params()
    # If there were no parameters, this would have already returned above.
    assert params, "At least the content type value should be present"
    ctype = params.pop(0)[0].lower().encode("latin-1")
    options: dict[bytes, bytes] = {}
    for param in params:
        key, opt = param
        # RFC 2231 values come back as (charset, language, value).
        if isinstance(opt, tuple):
            opt = opt[-1]
        # IE6 sends the full client path as the filename.
        if key == "filename":
            if opt[1:3] == ":\\" or opt[:2] == "\\\\":
                opt = opt.split("\\")[-1]
        options[key.encode("latin-1")] = opt.encode("latin-1")
    return ctype, options


def get_header(headers: Iterable[tuple[str, str]], name: str, default: str | None = None) -> str | None:
    """Returns the first value for ``name``, ignoring case."""
    name = name.lower()
    for key, value in headers:
        if key.lower() == name:
            return value
    return default


def get_all_headers(headers: Iterable[tuple[str, str]], name: str) -> list[str]:
    name = name.lower()
    return [value for key, value in headers if key.lower() == name]


def has_header(headers: Iterable[tuple[str, str]], name: str) -> bool:
    return get_header(headers, name) is not None


def status_line(status: int) -> bytes:
    try:
        reason = HTTPStatus(status).phrase
    except ValueError:
        reason = ""
    return b"HTTP/1.1 %d %s\r\n" % (status, reason.encode("latin-1"))


def check_headers(headers: Iterable[tuple[str, str]]) -> None:
    """Raises :class:`ValueError` for any header that cannot be written as an
    HTTP/1.1 header line: an empty name, a name with ``:``, a CR or LF
    anywhere, or text that is not Latin-1.
    """
    for name, value in headers:
        if "\r" in name or "\n" in name or ":" in name or not name:
            raise ValueError("Invalid header name: %r" % (name,))
        if "\r" in value or "\n" in value:
            raise ValueError("Invalid value for header %r: %r" % (name, value))
        try:
            name.encode("latin-1")
            value.encode("latin-1")
        except UnicodeEncodeError:
            raise ValueError("Header %r: %r is not Latin-1 text" % (name, value))


def encode_head(status: int, headers: Iterable[tuple[str, str]]) -> bytes:
    """Renders the status line and header block, in iteration order, ready
    to be written to the socket.
    """
    headers = list(headers)
    check_headers(headers)
    lines = [status_line(status)]
    for name, value in headers:
        lines.append(b"%s: %s\r\n" % (name.encode("latin-1"), value.encode("latin-1")))
    lines.append(b"\r\n")
    return b"".join(lines)

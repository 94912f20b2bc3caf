from __future__ import annotations

import base64
import binascii
from typing import TYPE_CHECKING

from .exceptions import DecodeError

if TYPE_CHECKING:  # pragma: no cover
    from typing import Protocol, TypeVar

    _T_contra = TypeVar("_T_contra", contravariant=True)

    class SupportsWrite(Protocol[_T_contra]):
        def write(self, __b: _T_contra) -> object: ...

        # No way to specify optional methods. See
        # https://github.com/python/typing/issues/601
        # def finalize(self) -> None: ...
        # def close(self) -> None: ...


class Base64Decoder:
    """Wraps a part sink and base64-decodes everything written to it before
    passing it on.  Input does not need to be aligned to 4 bytes; leftovers
    are carried over to the next write.
    """

    def __init__(self, underlying: SupportsWrite[bytes]) -> None:
        self.cache = bytearray()
        self.underlying = underlying

    def write(self, data: bytes) -> int:
        if len(self.cache) > 0:
            data = bytes(self.cache) + data

        # Only whole 4-byte groups can be decoded.
        decode_len = (len(data) // 4) * 4
        val = data[:decode_len]

        if len(val) > 0:
            try:
                decoded = base64.b64decode(val)
            except binascii.Error:
                raise DecodeError("There was an error raised while decoding base64-encoded data.")

            self.underlying.write(decoded)

        remaining_len = len(data) % 4
        if remaining_len > 0:
            self.cache[:] = data[-remaining_len:]
        else:
            self.cache[:] = b""

        return len(data)

    def close(self) -> None:
        if hasattr(self.underlying, "close"):
            self.underlying.close()

    def finalize(self) -> None:
        if len(self.cache) > 0:
            raise DecodeError(
                "There are %d bytes remaining in the Base64Decoder cache when finalize() is called" % len(self.cache)
            )

        if hasattr(self.underlying, "finalize"):
            self.underlying.finalize()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(underlying={self.underlying!r})"


class QuotedPrintableDecoder:
    """Wraps a part sink and decodes quoted-printable data written to it."""

    def __init__(self, underlying: SupportsWrite[bytes]) -> None:
        self.cache = b""
        self.underlying = underlying

    def write(self, data: bytes) -> int:
        if len(self.cache) > 0:
            data = self.cache + data

        # The longest escape is 3 bytes ("=XX" or "=\r\n"), so one starting in
        # the last 2 bytes may be incomplete.  Hold it back.
        idx = data.find(b"=", max(0, len(data) - 2))
        if idx == -1:
            enc, rest = data, b""
        else:
            enc, rest = data[:idx], data[idx:]

        if len(enc) > 0:
            self.underlying.write(binascii.a2b_qp(enc))

        self.cache = rest
        return len(data)

    def close(self) -> None:
        if hasattr(self.underlying, "close"):
            self.underlying.close()

    def finalize(self) -> None:
        if len(self.cache) > 0:
            self.underlying.write(binascii.a2b_qp(self.cache))
            self.cache = b""

        if hasattr(self.underlying, "finalize"):
            self.underlying.finalize()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(underlying={self.underlying!r})"

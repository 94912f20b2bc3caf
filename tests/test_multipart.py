from __future__ import annotations

import os
import random
import tempfile
import unittest
from io import BytesIO
from typing import TYPE_CHECKING
from unittest.mock import Mock

import yaml

from conn_adapter.exceptions import DecodeError, FileError, MalformedMultipartError, ParseError
from conn_adapter.multipart import (
    Binary,
    File,
    MultipartFormParser,
    MultipartParser,
    PartHeaders,
    Skip,
    Upload,
    put_param,
)

from .compat import parametrize, parametrize_class

if TYPE_CHECKING:
    from collections.abc import Iterator
    from typing import Any, TypedDict

    from conn_adapter.multipart import Classifier, Params, SegmentDecision

    class HttpCase(TypedDict):
        name: str
        test: bytes
        result: Any


# Get the current directory for our later test cases.
curr_dir = os.path.abspath(os.path.dirname(__file__))
http_tests_dir = os.path.join(curr_dir, "test_data", "http")


def load_http_tests() -> list[HttpCase]:
    cases: list[HttpCase] = []
    for f in sorted(os.listdir(http_tests_dir)):
        fname, ext = os.path.splitext(f)
        if ext != ".http":
            continue

        with open(os.path.join(http_tests_dir, f), "rb") as fh:
            test_data = fh.read()

        with open(os.path.join(http_tests_dir, fname + ".yaml"), "rb") as fy:
            yaml_data = yaml.safe_load(fy)

        cases.append({"name": fname, "test": test_data, "result": yaml_data})
    return cases


http_tests = load_http_tests()

# Datasets used for single-byte writing test.
single_byte_tests = [
    "almost_match_boundary",
    "almost_match_boundary_without_CR",
    "almost_match_boundary_without_LF",
    "almost_match_boundary_without_final_hyphen",
    "base64_encoding",
    "single_field_single_file",
]


def split_all(val: bytes) -> Iterator[tuple[bytes, bytes]]:
    """
    This function will split an array all possible ways.  For example:
        split_all([1,2,3,4])
    will give:
        ([1], [2,3,4]), ([1,2], [3,4]), ([1,2,3], [4])
    """
    for i in range(1, len(val) - 1):
        yield (val[:i], val[i:])


def default_classify(part: PartHeaders) -> SegmentDecision:
    if part.name is None:
        return Skip()
    if part.filename is not None:
        return File(part.name, BytesIO())
    return Binary(part.name)


def form_body(*parts: tuple[str, bytes], boundary: bytes = b"boundary") -> bytes:
    """Builds a multipart body from (header block, data) pairs."""
    out = []
    for headers, data in parts:
        out.append(b"--" + boundary + b"\r\n" + headers.encode("latin-1") + b"\r\n\r\n" + data + b"\r\n")
    out.append(b"--" + boundary + b"--\r\n")
    return b"".join(out)


class TestPartHeaders(unittest.TestCase):
    def test_disposition_fields(self) -> None:
        part = PartHeaders(
            [
                ("Content-Disposition", 'form-data; name="upload"; filename="a.txt"'),
                ("Content-Type", "text/plain"),
            ]
        )
        self.assertEqual(part.disposition, "form-data")
        self.assertEqual(part.name, "upload")
        self.assertEqual(part.filename, "a.txt")
        self.assertEqual(part.content_type, "text/plain")

    def test_missing_disposition(self) -> None:
        part = PartHeaders([("Content-Type", "text/plain")])
        self.assertIsNone(part.disposition)
        self.assertIsNone(part.name)
        self.assertIsNone(part.filename)

    def test_utf8_filename(self) -> None:
        value = 'form-data; name="f"; filename="caf\xc3\xa9.txt"'
        part = PartHeaders([("Content-Disposition", value)])
        self.assertEqual(part.filename, "café.txt")

    def test_lookup_and_iteration(self) -> None:
        headers = [("content-disposition", 'form-data; name="x"'), ("X-Extra", "1")]
        part = PartHeaders(headers)
        self.assertEqual(part.get("x-extra"), "1")
        self.assertEqual(part.get("missing", "default"), "default")
        self.assertEqual(list(part), headers)
        self.assertEqual(len(part), 2)
        self.assertIn("name='x'", repr(part))


class TestUpload(unittest.TestCase):
    def test_equality(self) -> None:
        u1 = Upload("f", "a.txt", "text/plain", "/tmp/a", 3)
        u2 = Upload("f", "a.txt", "text/plain", "/tmp/a", 3)
        u3 = Upload("f", "a.txt", "text/plain", "/tmp/a", 4)
        self.assertEqual(u1, u2)
        self.assertNotEqual(u1, u3)

    def test_equality_with_other(self) -> None:
        self.assertNotEqual(Upload("f", None, None, "/tmp/a", 0), "f")

    def test_repr(self) -> None:
        self.assertEqual(
            repr(Upload("f", "a.txt", None, "/tmp/a", 3)),
            "Upload(name='f', filename='a.txt', content_type=None, size=3)",
        )


class TestDecisions(unittest.TestCase):
    def test_skip_equality(self) -> None:
        self.assertEqual(Skip(), Skip())
        self.assertNotEqual(Skip(), Binary("x"))
        self.assertEqual(repr(Skip()), "Skip()")

    def test_named_tuples(self) -> None:
        self.assertEqual(Binary("x").name, "x")
        dest = BytesIO()
        self.assertIs(File("x", dest).destination, dest)


class TestPutParam(unittest.TestCase):
    def test_last_write_wins(self) -> None:
        params: Params = {}
        put_param(params, "a", b"1")
        put_param(params, "a", b"2")
        self.assertEqual(params, {"a": b"2"})

    def test_bracket_names_collect(self) -> None:
        params: Params = {}
        put_param(params, "a[]", b"1")
        put_param(params, "b", b"x")
        put_param(params, "a[]", b"2")
        self.assertEqual(params, {"a": [b"1", b"2"], "b": b"x"})

    def test_bracket_name_replaces_scalar(self) -> None:
        params: Params = {"a": b"scalar"}
        put_param(params, "a[]", b"1")
        self.assertEqual(params, {"a": [b"1"]})


class TestMultipartParser(unittest.TestCase):
    def setUp(self) -> None:
        self.events: list[tuple[Any, ...]] = []

        def notify(name: str) -> Any:
            return lambda: self.events.append((name,))

        def data(name: str) -> Any:
            return lambda d, start, end: self.events.append((name, d[start:end]))

        self.callbacks: Any = {
            "on_part_begin": notify("part_begin"),
            "on_part_data": data("part_data"),
            "on_part_end": notify("part_end"),
            "on_header_begin": notify("header_begin"),
            "on_header_field": data("header_field"),
            "on_header_value": data("header_value"),
            "on_header_end": notify("header_end"),
            "on_headers_finished": notify("headers_finished"),
            "on_end": notify("end"),
        }
        self.p = MultipartParser(b"boundary", self.callbacks)

    def test_callback_order(self) -> None:
        with open(os.path.join(http_tests_dir, "single_field.http"), "rb") as f:
            data = f.read()

        self.assertEqual(self.p.write(data), len(data))
        self.p.finalize()

        self.assertEqual(
            self.events,
            [
                ("part_begin",),
                ("header_begin",),
                ("header_field", b"Content-Disposition"),
                ("header_value", b'form-data; name="field"'),
                ("header_end",),
                ("headers_finished",),
                ("part_data", b"This is a test."),
                ("part_end",),
                ("end",),
            ],
        )

    def test_part_data_split_across_writes(self) -> None:
        data = form_body(('Content-Disposition: form-data; name="f"', b"abc\r\n-def"))
        for i in range(len(data)):
            self.p.write(data[i : i + 1])
        self.p.finalize()

        part_data = b"".join(e[1] for e in self.events if e[0] == "part_data")
        self.assertEqual(part_data, b"abc\r\n-def")

    def test_str_boundary(self) -> None:
        p = MultipartParser("boundary")
        self.assertEqual(p.boundary, b"\r\n--boundary")

    def test_empty_boundary(self) -> None:
        with self.assertRaises(ValueError):
            MultipartParser(b"")

    def test_set_callback(self) -> None:
        self.p.set_callback("part_data", None)
        on_end = Mock()
        self.p.set_callback("end", on_end)

        self.p.write(form_body(('Content-Disposition: form-data; name="f"', b"abc")))

        self.assertNotIn("part_data", [e[0] for e in self.events])
        on_end.assert_called_once_with()

    def test_bad_start_boundary(self) -> None:
        with self.assertRaises(MalformedMultipartError):
            MultipartParser(b"boundary").write(b"--boundary\rfoobar")

        with self.assertRaises(MalformedMultipartError):
            MultipartParser(b"boundary").write(b"--boundaryfoobar")

        with self.assertRaisesRegex(
            MalformedMultipartError, "Expected boundary character {!r}, got {!r}".format(b"b"[0], b"B"[0])
        ):
            MultipartParser(b"boundary").write(b"--Boundary\r\nfoobar")

    def test_zero_length_header_name(self) -> None:
        with self.assertRaises(MalformedMultipartError) as ctx:
            self.p.write(b"--boundary\r\n: value\r\n")
        self.assertEqual(ctx.exception.offset, 12)

    def test_missing_lf_after_header(self) -> None:
        with self.assertRaises(MalformedMultipartError):
            self.p.write(b"--boundary\r\nName: value\rX")

    def test_closing_boundary_only(self) -> None:
        self.p.write(b"--boundary--\r\n")
        self.p.finalize()
        self.assertEqual(self.events, [("end",)])

    def test_empty_body(self) -> None:
        self.p.write(b"")
        self.p.finalize()
        self.p.write(b"\r\n\r\n")
        self.p.finalize()
        self.assertEqual(self.events, [])

    def test_truncated_body(self) -> None:
        self.p.write(b"--boundary\r\nContent-Disposition: form-data; name=\"f\"\r\n\r\nabc")
        with self.assertRaises(MalformedMultipartError) as ctx:
            self.p.finalize()
        self.assertEqual(ctx.exception.offset, -1)

    def test_data_after_end_is_ignored(self) -> None:
        data = b"--boundary--\r\ngarbage"
        self.assertEqual(self.p.write(data), len(data))
        self.assertEqual(self.p.write(b"more garbage"), 12)
        self.p.finalize()

    def test_corrupt_lookbehind(self) -> None:
        self.p.write(b"--boundary\r\nContent-Disposition: form-data; name=\"f\"\r\n\r\na")
        # More held-back bytes than a boundary, with no boundary in progress.
        self.p.marks["part_data"] = -(len(self.p.boundary) + 3)
        with self.assertRaisesRegex(MalformedMultipartError, "Look-back buffer error"):
            self.p.write(b"x")

    def test_repr(self) -> None:
        self.assertEqual(repr(self.p), "MultipartParser(boundary=b'\\r\\n--boundary')")


@parametrize_class
class TestMultipartFormParser(unittest.TestCase):
    def make(self, boundary: str | bytes, classify: Classifier = default_classify, config: Any = {}) -> None:
        self.f = MultipartFormParser(boundary, classify, config=config)
        self.params: Params = {}

    def finish(self) -> Params:
        try:
            self.params = self.f.finalize()
        finally:
            self.f.close()
        return self.params

    def assert_field(self, name: str, value: bytes) -> None:
        self.assertIn(name, self.params)
        self.assertEqual(self.params[name], value)

    def assert_file(self, name: str, file_name: str, data: bytes, content_type: str | None = None) -> None:
        upload = self.params.get(name)
        assert isinstance(upload, Upload), upload
        self.assertEqual(upload.name, name)
        self.assertEqual(upload.filename, file_name)
        self.assertEqual(upload.size, len(data))
        if content_type is not None:
            self.assertEqual(upload.content_type, content_type)

        destination = upload.destination
        assert isinstance(destination, BytesIO)
        self.assertEqual(destination.getvalue(), data)

    def assert_expected(self, expected: list[dict[str, Any]]) -> None:
        for e in expected:
            type = e["type"]
            data = e["data"].encode("latin-1")

            if type == "field":
                self.assert_field(e["name"], data)

            elif type == "file":
                self.assert_file(e["name"], e["file_name"], data, e.get("content_type"))

            else:
                assert False, type

        self.assertEqual(len(self.params), len(expected))

    @parametrize("param", http_tests)
    def test_http(self, param: HttpCase) -> None:
        # Firstly, create our parser with the given boundary.
        boundary = param["result"]["boundary"]
        if isinstance(boundary, str):
            boundary = boundary.encode("latin-1")
        self.make(boundary)

        # Now, we feed the parser with data.
        exc = None
        try:
            processed = self.f.write(param["test"])
            self.finish()
        except MalformedMultipartError as err:
            processed = 0
            exc = err
        finally:
            self.f.close()

        # Do we expect an error?
        if "error" in param["result"]["expected"]:
            self.assertIsNotNone(exc)
            assert exc is not None
            self.assertEqual(param["result"]["expected"]["error"], exc.offset)
            return

        # No error!
        self.assertIsNone(exc)
        self.assertEqual(processed, len(param["test"]), param["name"])
        self.assert_expected(param["result"]["expected"])

    def test_random_splitting(self) -> None:
        """
        This test runs a simple multipart body with one field and one file
        through every possible split.
        """
        test_file = "single_field_single_file.http"
        with open(os.path.join(http_tests_dir, test_file), "rb") as f:
            test_data = f.read()

        for first, last in split_all(test_data):
            self.make("boundary")

            i = 0
            i += self.f.write(first)
            i += self.f.write(last)
            self.finish()

            self.assertEqual(i, len(test_data))

            self.assert_field("field", b"test1")
            self.assert_file("file", "file.txt", b"test2")

    @parametrize("param", [t for t in http_tests if t["name"] in single_byte_tests])
    def test_feed_single_bytes(self, param: HttpCase) -> None:
        """
        This test parses multipart bodies 1 byte at a time.
        """
        test_data = param["test"]
        self.make(param["result"]["boundary"])

        i = 0
        for x in range(len(test_data)):
            i += self.f.write(test_data[x : x + 1])

        self.finish()

        self.assertEqual(i, len(test_data))
        self.assert_expected(param["result"]["expected"])

    def test_feed_blocks(self) -> None:
        """
        This test parses a simple multipart body in blocks of every size,
        starting at every offset.
        """
        test_file = "single_field_blocks.http"
        with open(os.path.join(http_tests_dir, test_file), "rb") as f:
            test_data = f.read()

        for c in range(1, len(test_data) + 1):
            for d in range(c):
                self.make("boundary")

                i = self.f.write(test_data[:d])
                for x in range(d, len(test_data), c):
                    i += self.f.write(test_data[x : x + c])

                self.finish()

                self.assertEqual(i, len(test_data))
                self.assert_field("field", b"0123456789ABCDEFGHIJ0123456789ABCDEFGHIJ")

    def test_request_body_fuzz(self) -> None:
        """
        This test randomly mutates a valid body (inserting, deleting or
        swapping bytes) and checks that parsing either succeeds or fails with
        a parse error.
        """
        test_file = "single_field_single_file.http"
        with open(os.path.join(http_tests_dir, test_file), "rb") as f:
            test_data = f.read()

        for _ in range(500):
            fuzz_data = bytearray(test_data)

            choice = random.choice([1, 2, 3])
            if choice == 1:
                fuzz_data.insert(random.randrange(len(test_data)), random.randrange(256))
            elif choice == 2:
                del fuzz_data[random.randrange(len(test_data))]
            else:
                i = random.randrange(len(test_data) - 1)
                fuzz_data[i], fuzz_data[i + 1] = fuzz_data[i + 1], fuzz_data[i]

            self.make("boundary")
            try:
                self.assertEqual(self.f.write(bytes(fuzz_data)), len(fuzz_data))
                self.f.finalize()
            except ParseError:
                pass
            finally:
                self.f.close()

    def test_request_body_fuzz_random_data(self) -> None:
        for _ in range(200):
            data = os.urandom(random.randrange(100, 4096))

            self.make("boundary")
            try:
                self.f.write(data)
                self.f.finalize()
            except ParseError:
                pass
            finally:
                self.f.close()

    def test_skip(self) -> None:
        def classify(part: PartHeaders) -> SegmentDecision:
            if part.filename is not None:
                return Skip()
            return Binary(part.name or "")

        with open(os.path.join(http_tests_dir, "single_field_single_file.http"), "rb") as f:
            test_data = f.read()

        self.make("boundary", classify)
        self.f.write(test_data)
        self.assertEqual(self.finish(), {"field": b"test1"})

    def test_classify_sees_headers_in_order(self) -> None:
        seen: list[PartHeaders] = []

        def classify(part: PartHeaders) -> SegmentDecision:
            seen.append(part)
            return Skip()

        with open(os.path.join(http_tests_dir, "single_field_single_file.http"), "rb") as f:
            test_data = f.read()

        self.make("boundary", classify)
        self.f.write(test_data)
        self.assertEqual(self.finish(), {})

        self.assertEqual([p.name for p in seen], ["field", "file"])
        self.assertEqual(
            list(seen[1]),
            [
                ("Content-Disposition", 'form-data; name="file"; filename="file.txt"'),
                ("Content-Type", "text/plain"),
            ],
        )

    def test_binding_name_comes_from_decision(self) -> None:
        self.make("boundary", lambda part: Binary("renamed"))
        self.f.write(form_body(('Content-Disposition: form-data; name="original"', b"value")))
        self.assertEqual(self.finish(), {"renamed": b"value"})

    def test_list_and_duplicate_names(self) -> None:
        body = form_body(
            ('Content-Disposition: form-data; name="files[]"', b"a"),
            ('Content-Disposition: form-data; name="tag"', b"first"),
            ('Content-Disposition: form-data; name="files[]"', b"b"),
            ('Content-Disposition: form-data; name="tag"', b"second"),
        )
        self.make("boundary")
        self.f.write(body)
        self.assertEqual(self.finish(), {"files": [b"a", b"b"], "tag": b"second"})

    def test_bad_decision(self) -> None:
        self.make("boundary", lambda part: "nope")  # type: ignore[arg-type,return-value]
        with self.assertRaises(TypeError):
            self.f.write(form_body(('Content-Disposition: form-data; name="f"', b"value")))
        self.f.close()

    def test_file_path_destination(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "upload.bin")
            self.make("boundary", lambda part: File("upload", path))
            self.f.write(
                form_body(('Content-Disposition: form-data; name="upload"; filename="x.bin"', b"\x00\x01binary"))
            )
            params = self.finish()

            self.assertEqual(params, {"upload": Upload("upload", "x.bin", None, path, 8)})
            with open(path, "rb") as f:
                self.assertEqual(f.read(), b"\x00\x01binary")

    def test_file_object_destination_is_not_closed(self) -> None:
        dest = BytesIO()
        self.make("boundary", lambda part: File("upload", dest))
        self.f.write(form_body(('Content-Disposition: form-data; name="upload"', b"data")))
        self.finish()

        self.assertFalse(dest.closed)
        self.assertEqual(dest.getvalue(), b"data")

    def test_unopenable_destination(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "missing", "upload.bin")
            self.make("boundary", lambda part: File("upload", path))
            with self.assertRaises(FileError):
                self.f.write(form_body(('Content-Disposition: form-data; name="upload"', b"data")))
            self.f.close()

    def test_close_mid_part(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "upload.bin")
            self.make("boundary", lambda part: File("upload", path))
            self.f.write(b'--boundary\r\nContent-Disposition: form-data; name="upload"\r\n\r\npartial data')
            with self.assertRaises(MalformedMultipartError):
                self.f.finalize()

            self.f.close()
            self.f.close()
            self.assertTrue(os.path.exists(path))

    def test_header_size_limit(self) -> None:
        self.make("boundary", config={"MAX_HEADER_SIZE": 32})
        long_value = "form-data; name=\"" + "x" * 64 + '"'
        with self.assertRaises(MalformedMultipartError):
            self.f.write(form_body(("Content-Disposition: " + long_value, b"data")))

    def test_header_size_limit_is_per_part(self) -> None:
        header = 'Content-Disposition: form-data; name="f[]"'
        self.make("boundary", config={"MAX_HEADER_SIZE": len(header)})
        self.f.write(form_body((header, b"1"), (header, b"2"), (header, b"3")))
        self.assertEqual(self.finish(), {"f": [b"1", b"2", b"3"]})

    def test_unknown_transfer_encoding(self) -> None:
        body = form_body(
            ('Content-Disposition: form-data; name="f"\r\nContent-Transfer-Encoding: x-custom', b"raw=3D")
        )
        self.make("boundary")
        self.f.write(body)
        self.assertEqual(self.finish(), {"f": b"raw=3D"})

        self.make("boundary", config={"UPLOAD_ERROR_ON_BAD_CTE": True})
        with self.assertRaises(MalformedMultipartError):
            self.f.write(body)
        self.f.close()

    def test_bad_base64_part(self) -> None:
        body = form_body(('Content-Disposition: form-data; name="f"\r\nContent-Transfer-Encoding: base64', b"Zm9"))
        self.make("boundary")
        with self.assertRaises(DecodeError):
            self.f.write(body)
        self.f.close()

    def test_bytes_received(self) -> None:
        body = form_body(('Content-Disposition: form-data; name="f"', b"value"))
        self.make("boundary")
        self.f.write(body[:10])
        self.f.write(body[10:])
        self.assertEqual(self.f.bytes_received, len(body))
        self.finish()

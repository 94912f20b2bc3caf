import sys

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from conn_adapter.exceptions import AdapterError
    from conn_adapter.multipart import Binary, Skip
    from conn_adapter.testing import RecordingAdapter

adapter = RecordingAdapter()


def classify(part):
    if part.name is None:
        return Skip()
    return Binary(part.name)


def parse_random_body(fdp: EnhancedDataProvider) -> None:
    headers = [("Content-Type", "multipart/form-data; boundary=boundary")]
    limit = fdp.ConsumeIntInRange(1, 1024)
    token = adapter.payload("POST", headers, fdp.ConsumeRandomBytes())
    adapter.parse_req_multipart(token, limit, classify)


def parse_multipart_form_data(fdp: EnhancedDataProvider) -> None:
    boundary = "boundary"
    headers = [("Content-Type", f"multipart/form-data; boundary={boundary}")]
    body = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="{fdp.ConsumeRandomString()}"\r\n\r\n'
        f"{fdp.ConsumeRandomString()}\r\n"
        f"--{boundary}--\r\n"
    )
    token = adapter.payload("POST", headers, body.encode("latin1", errors="ignore"))
    adapter.parse_req_multipart(token, 64 * 1024, classify)


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    targets = [parse_random_body, parse_multipart_form_data]
    target = fdp.PickValueInList(targets)

    try:
        target(fdp)
    except AdapterError:
        return


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()

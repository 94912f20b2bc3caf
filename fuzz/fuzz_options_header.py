import sys

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from conn_adapter.headers import encode_head, parse_options_header
    from conn_adapter.multipart import PartHeaders


def fuzz_options_header(fdp: EnhancedDataProvider) -> None:
    parse_options_header(fdp.ConsumeRandomBytes())


def fuzz_part_headers(fdp: EnhancedDataProvider) -> None:
    PartHeaders(fdp.ConsumeHeaders())


def fuzz_encode_head(fdp: EnhancedDataProvider) -> None:
    try:
        encode_head(fdp.ConsumeIntInRange(100, 999), fdp.ConsumeHeaders())
    except ValueError:
        return


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    targets = [fuzz_options_header, fuzz_part_headers, fuzz_encode_head]
    target = fdp.PickValueInList(targets)

    try:
        target(fdp)
    except AssertionError:
        return
    except UnicodeEncodeError:
        return


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()

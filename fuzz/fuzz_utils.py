import sys

import atheris

with atheris.instrument_imports():
    from tornade.utils import (
        chunk_bytes,
        parse_bool,
        parse_float,
        parse_int,
        parse_optional_float,
        strip_or_none,
    )


def TestOneInput(data: bytes) -> None:
    """Fuzz utility parsing functions with arbitrary input."""
    value = data.decode("utf-8", errors="ignore")

    # Parsers with default fallbacks should never raise
    strip_or_none(value)
    parse_bool(value)
    parse_int(value, default=0)
    parse_float(value, default=0.0)
    parse_optional_float(value)

    if len(data) > 0:
        size = (data[0] % 64) + 1  # 1-64 byte chunks
        list(chunk_bytes(data, size))


def main() -> None:
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()

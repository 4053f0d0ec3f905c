import sys

import atheris

with atheris.instrument_imports():
    from tornade.assistant.llm import (
        MalformedToolLikeText,
        PlainText,
        RecognizedToolCall,
        parse_tool_call,
    )


def TestOneInput(data: bytes) -> None:
    # Any chat reply must classify without raising, and non-tool replies must round-trip verbatim.
    value = data.decode("utf-8", errors="ignore")
    parsed = parse_tool_call(value)
    if isinstance(parsed, (PlainText, MalformedToolLikeText)):
        assert parsed.text == value
    elif isinstance(parsed, RecognizedToolCall):
        assert isinstance(parsed.arguments, dict)
        assert parsed.raw == value


def main() -> None:
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()

import sys

import atheris
import numpy as np

with atheris.instrument_imports():
    from tornade.assistant.audio import float_to_pcm16


def TestOneInput(data: bytes) -> None:
    # Arbitrary float32 blocks (including NaN/inf) must convert without wraparound.
    usable = len(data) - (len(data) % 4)
    samples = np.frombuffer(data[:usable], dtype=np.float32)
    pcm = float_to_pcm16(samples)
    assert pcm.dtype == np.int16
    assert pcm.shape == samples.shape
    finite = np.isfinite(samples)
    assert np.all(pcm[finite & (samples >= 0)] >= 0)
    assert np.all(pcm[finite & (samples <= 0)] <= 0)


def main() -> None:
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()

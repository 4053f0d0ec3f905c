"""Audio input/output helpers for the assistant."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import queue
import shutil
import threading
from asyncio.subprocess import Process
from collections.abc import Callable, Iterator

import numpy as np

try:
    import sounddevice as sd
except (ImportError, OSError):  # PortAudio shared library missing
    sd = None

from .config import MicConfig
from .errors import DeviceError, InvalidStateError, MicrophonePermissionError

FrameListener = Callable[[np.ndarray], None]

PCM16_SCALE = 32767
_PERMISSION_MARKERS = ("permission", "denied", "not authorized", "not permitted")


def float_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Convert float samples in [-1.0, 1.0] to 16-bit signed PCM.

    Values outside the range are clamped and NaN becomes silence, so the
    result never wraps around.
    """
    data = np.nan_to_num(np.asarray(samples, dtype=np.float32), nan=0.0, posinf=1.0, neginf=-1.0)
    clipped = np.clip(data, -1.0, 1.0)
    return (clipped * PCM16_SCALE).astype(np.int16)


def spectrum_level(samples: np.ndarray, fft_size: int) -> float:
    """Mean magnitude of the frequency spectrum over the last ``fft_size`` samples."""
    if samples.size == 0:
        return 0.0
    window = samples[-fft_size:]
    return float(np.abs(np.fft.rfft(window)).mean())


class AudioCapture:
    """Exclusive microphone stream with a level meter and frame fan-out.

    Blocks arrive on the PortAudio callback thread. That path converts to PCM16,
    updates the level and hands each frame to listeners; it never blocks.
    """

    def __init__(self, config: MicConfig, logger: logging.Logger | None = None) -> None:
        self.config = config
        self.block_size = config.block_size
        self._logger = logger or logging.getLogger(__name__)
        self._stream = None
        self._lock = threading.Lock()
        self._listeners: list[FrameListener] = []
        self._level = 0.0
        self._slot: queue.Queue[np.ndarray | None] = queue.Queue(maxsize=1)
        self._frames_started = False

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    def open(self, block_size: int | None = None) -> None:
        if self._stream is not None:
            return
        if sd is None:
            raise DeviceError("Audio input is unavailable: PortAudio library not found")
        if block_size:
            self.block_size = block_size
        try:
            sd.query_devices(self.config.device, kind="input")
        except (ValueError, sd.PortAudioError) as exc:
            raise DeviceError(f"No microphone available: {exc}") from exc
        try:
            stream = sd.InputStream(
                samplerate=self.config.rate,
                channels=self.config.channels,
                dtype="float32",
                blocksize=self.block_size,
                device=self.config.device,
                callback=self._on_block,
            )
            stream.start()
        except PermissionError as exc:
            raise MicrophonePermissionError(f"Microphone access denied: {exc}") from exc
        except sd.PortAudioError as exc:
            message = str(exc)
            if any(marker in message.lower() for marker in _PERMISSION_MARKERS):
                raise MicrophonePermissionError(f"Microphone access denied: {message}") from exc
            raise DeviceError(f"Unable to open microphone: {message}") from exc
        self._stream = stream
        self._logger.debug(
            "Microphone capture started (rate=%s, block=%s, device=%s)",
            self.config.rate,
            self.block_size,
            self.config.device or "default",
        )

    def close(self) -> None:
        with self._lock:
            stream = self._stream
            self._stream = None
            self._listeners.clear()
        if stream is None:
            return
        self._logger.debug("Stopping microphone capture")
        try:
            stream.stop()
            stream.close()
        except Exception:
            self._logger.warning("Microphone stream did not close cleanly", exc_info=True)
        self._level = 0.0
        self._offer(None)

    def add_listener(self, listener: FrameListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: FrameListener) -> None:
        with self._lock:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

    def level(self) -> float:
        return self._level

    def frames(self) -> Iterator[np.ndarray]:
        """Yield PCM16 frames until the capture closes. Can only be iterated once."""
        if self._frames_started:
            raise InvalidStateError("Frame iterator already consumed")
        self._frames_started = True
        return self._iter_frames()

    def _iter_frames(self) -> Iterator[np.ndarray]:
        while True:
            frame = self._slot.get()
            if frame is None:
                return
            yield frame

    def _offer(self, frame: np.ndarray | None) -> None:
        try:
            self._slot.put_nowait(frame)
        except queue.Full:
            with contextlib.suppress(queue.Empty):
                self._slot.get_nowait()
            with contextlib.suppress(queue.Full):
                self._slot.put_nowait(frame)

    def _on_block(self, indata, frames, time_info, status) -> None:  # noqa: ANN001
        if status:
            self._logger.debug("Microphone status: %s", status)
        samples = np.array(indata[:, 0], dtype=np.float32)
        self.process_block(samples)

    def process_block(self, samples: np.ndarray) -> None:
        """Meter, convert and fan out one block of float samples."""
        self._level = spectrum_level(samples, self.config.fft_size)
        frame = float_to_pcm16(samples)
        with self._lock:
            if self._stream is None:
                return
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(frame)
            except Exception:
                self._logger.exception("Audio frame listener failed")
        self._offer(frame)


class AplaySink:
    """Play PCM audio via ``aplay``/``pw-play``/``paplay``."""

    def __init__(self, binary: str | None = None, logger: logging.Logger | None = None) -> None:
        env_override = os.environ.get("TORNADE_AUDIO_PLAYER")
        if binary is None and env_override:
            binary = env_override
        self.binary = binary or "auto"
        self._proc: Process | None = None
        self._logger = logger or logging.getLogger(__name__)

    @property
    def active(self) -> bool:
        return self._proc is not None

    async def start(self, rate: int, width: int, channels: int) -> None:
        await self.stop()
        player = self._resolve_player()
        try:
            cmd = self._build_command(player, rate, width, channels)
        except ValueError as exc:
            self._logger.warning(
                "Player %s cannot handle width=%s (%s); falling back to aplay",
                player,
                width,
                exc,
            )
            player = "aplay"
            cmd = _build_aplay_command(rate, width, channels)
        self._logger.debug("Starting playback (%s): %s", player, " ".join(cmd))
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise DeviceError(f"Unable to start audio player {player}: {exc}") from exc

    async def write(self, chunk: bytes) -> None:
        if not self._proc or not self._proc.stdin:
            raise DeviceError("Playback is not active")
        try:
            self._proc.stdin.write(chunk)
            await self._proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            stderr = await self._drain_stderr()
            await self.stop()
            detail = f" ({stderr})" if stderr else ""
            raise DeviceError(f"Playback process exited unexpectedly{detail}") from exc

    async def stop(self) -> None:
        """Close stdin and wait for the player to drain what it was given."""
        if not self._proc:
            return
        self._logger.debug("Stopping playback")
        proc = self._proc
        if proc.stdin:
            proc.stdin.close()
            with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                await proc.stdin.wait_closed()
        await proc.wait()
        self._proc = None

    def kill(self) -> None:
        """Abort playback immediately."""
        proc = self._proc
        self._proc = None
        if proc is None or proc.returncode is not None:
            return
        self._logger.debug("Killing playback process")
        with contextlib.suppress(ProcessLookupError):
            proc.kill()

    async def _drain_stderr(self) -> str:
        if not self._proc or not self._proc.stderr:
            return ""
        try:
            data = await asyncio.wait_for(self._proc.stderr.read(), timeout=0.05)
        except (TimeoutError, RuntimeError):
            return ""
        return data.decode("utf-8", errors="ignore").strip()

    def _resolve_player(self) -> str:
        return _determine_player(self.binary, self._logger)

    @staticmethod
    def _build_command(player: str, rate: int, width: int, channels: int) -> list[str]:
        return _build_command_for_player(player, rate, width, channels)


def _alsa_format(width: int) -> str:
    return {
        1: "U8",
        2: "S16_LE",
        3: "S24_LE",
        4: "S32_LE",
    }.get(width, "S16_LE")


def _supported_player(binary: str) -> bool:
    if os.path.isabs(binary):
        return os.access(binary, os.X_OK)
    return shutil.which(binary) is not None


def _player_candidates() -> list[str]:
    return ["pw-play", "paplay", "aplay"]


def _pw_format(width: int) -> str | None:
    return {
        1: "s8",
        2: "s16",
        4: "s32",
    }.get(width)


def _paplay_format(width: int) -> str:
    return {
        1: "s8",
        2: "s16le",
        3: "s24le",
        4: "s32le",
    }.get(width, "s16le")


def _build_pw_play_command(rate: int, width: int, channels: int) -> list[str]:
    fmt = _pw_format(width)
    if not fmt:
        raise ValueError(f"pw-play has no format for width={width}")
    return ["pw-play", "--raw", "--rate", str(rate), "--channels", str(channels), "--format", fmt, "-"]


def _build_paplay_command(rate: int, width: int, channels: int) -> list[str]:
    fmt = _paplay_format(width)
    return ["paplay", "--raw", "--rate", str(rate), "--channels", str(channels), f"--format={fmt}", "-"]


def _build_aplay_command(rate: int, width: int, channels: int) -> list[str]:
    fmt = _alsa_format(width)
    return ["aplay", "-q", "-t", "raw", "-f", fmt, "-c", str(channels), "-r", str(rate), "-"]


def _build_command_for_player(player: str, rate: int, width: int, channels: int) -> list[str]:
    if player == "pw-play":
        return _build_pw_play_command(rate, width, channels)
    if player == "paplay":
        return _build_paplay_command(rate, width, channels)
    return _build_aplay_command(rate, width, channels)


def _determine_player(preferred: str, logger: logging.Logger) -> str:
    if preferred != "auto":
        if _supported_player(preferred):
            return preferred
        logger.warning("Requested audio player '%s' not found; falling back to auto-detection", preferred)
    for candidate in _player_candidates():
        if _supported_player(candidate):
            return candidate
    return "aplay"

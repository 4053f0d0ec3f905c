"""Wake word detection."""

from __future__ import annotations

import logging
import math
import queue
import sys
import threading
import time
from array import array
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pvporcupine

from .errors import ConfigurationError, EngineError, InvalidStateError

LOGGER = logging.getLogger("tornade-assistant.wake")

DetectCallback = Callable[[str], None]
ErrorCallback = Callable[[Exception], None]


@dataclass(frozen=True)
class WakeResources:
    """Everything the engine needs to load a keyword."""

    keyword_path: Path
    model_path: Path
    access_key: str | None
    sensitivity: float = 0.5


def compute_rms(chunk: bytes, sample_width: int) -> int:
    """Compute RMS (Root Mean Square) for an audio chunk."""
    if not chunk or sample_width <= 0:
        return 0
    frames = len(chunk) // sample_width
    if frames <= 0:
        return 0
    trimmed = chunk[: frames * sample_width]
    typecode = {1: "b", 2: "h", 4: "i"}.get(sample_width)
    if typecode:
        samples = array(typecode)
        samples.frombytes(trimmed)
        if sample_width > 1 and sys.byteorder != "little":
            samples.byteswap()
        total = math.fsum(value * value for value in samples)
    else:
        total = 0.0
        for i in range(0, len(trimmed), sample_width):
            sample = int.from_bytes(trimmed[i : i + sample_width], "little", signed=True)
            total += sample * sample
    mean = total / frames
    return int(math.sqrt(mean))


class WakeDetector:
    """Streaming keyword detector fed with externally supplied PCM frames.

    ``feed`` must return immediately; implementations may process frames on a
    worker. ``on_detect`` and ``on_error`` may be invoked from that worker.
    """

    frame_length: int = 512
    sample_rate: int = 16000

    def start(
        self,
        keyword: str,
        resources: WakeResources,
        on_detect: DetectCallback,
        on_error: ErrorCallback,
    ) -> None:
        raise NotImplementedError

    def feed(self, frame: np.ndarray) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError

    @property
    def running(self) -> bool:
        raise NotImplementedError


def validate_resources(resources: WakeResources) -> None:
    """Raise ConfigurationError when a credential or model file is missing."""
    if not resources.access_key:
        raise ConfigurationError("Picovoice access key (PICOVOICE_ACCESS_KEY) is missing")
    if not resources.keyword_path.is_file():
        raise ConfigurationError(f"Wake word model not found: {resources.keyword_path}")
    if not resources.model_path.is_file():
        raise ConfigurationError(f"Wake word parameter model not found: {resources.model_path}")


@dataclass
class _WorkerState:
    """Per-start worker bookkeeping, guarded by the detector lock."""

    engine: pvporcupine.Porcupine
    frames: queue.Queue
    exited: bool = False
    orphaned: bool = False


class PorcupineWakeDetector(WakeDetector):
    """Porcupine keyword spotting on a background worker thread."""

    def __init__(
        self,
        queue_size: int = 32,
        logger: logging.Logger | None = None,
        join_timeout: float = 2.0,
    ) -> None:
        self._logger = logger or LOGGER
        self._join_timeout = join_timeout
        self._queue_size = queue_size
        self._state: _WorkerState | None = None
        self._lock = threading.Lock()
        self._engine: pvporcupine.Porcupine | None = None
        self._worker: threading.Thread | None = None
        self._running = threading.Event()
        self._label = ""
        self._on_detect: DetectCallback | None = None
        self._on_error: ErrorCallback | None = None
        self._dropped = 0
        self._last_drop_log = 0.0

    @property
    def running(self) -> bool:
        return self._running.is_set()

    def start(
        self,
        keyword: str,
        resources: WakeResources,
        on_detect: DetectCallback,
        on_error: ErrorCallback,
    ) -> None:
        if self._engine is not None:
            raise InvalidStateError("Wake word detector already started")
        validate_resources(resources)
        try:
            engine = pvporcupine.create(
                access_key=resources.access_key,
                keyword_paths=[str(resources.keyword_path)],
                model_path=str(resources.model_path),
                sensitivities=[resources.sensitivity],
            )
        except pvporcupine.PorcupineError as exc:
            raise EngineError(f"Wake word engine failed to start: {exc}") from exc
        self._engine = engine
        self.frame_length = engine.frame_length
        self.sample_rate = engine.sample_rate
        self._label = keyword
        self._on_detect = on_detect
        self._on_error = on_error
        self._state = _WorkerState(engine=engine, frames=queue.Queue(maxsize=self._queue_size))
        self._running.set()
        self._worker = threading.Thread(
            target=self._run, args=(self._state,), name="porcupine-worker", daemon=True
        )
        self._worker.start()
        self._logger.info(
            "Wake word detector listening for '%s' (frame=%s, rate=%s)",
            keyword,
            self.frame_length,
            self.sample_rate,
        )

    def feed(self, frame: np.ndarray) -> None:
        if not self._running.is_set():
            raise InvalidStateError("Wake word detector is not running")
        try:
            self._state.frames.put_nowait(frame)
        except queue.Full:
            self._dropped += 1
            now = time.monotonic()
            if now - self._last_drop_log >= 30.0:
                self._logger.debug("Wake detector queue full; dropped %s frame(s)", self._dropped)
                self._last_drop_log = now

    def stop(self) -> None:
        self._running.clear()
        worker = self._worker
        state = self._state
        self._worker = None
        if worker is not None:
            try:
                state.frames.put_nowait(None)
            except queue.Full:
                pass
            if worker is not threading.current_thread():
                worker.join(timeout=self._join_timeout)
        engine = self._engine
        self._engine = None
        if engine is None:
            return
        with self._lock:
            deferred = state is not None and not state.exited
            if deferred:
                state.orphaned = True
        if deferred:
            # The worker may be inside engine.process(); it deletes the engine on exit.
            if worker is not threading.current_thread():
                self._logger.warning("Wake word worker did not exit in time; engine released when it does")
            return
        engine.delete()
        self._logger.debug("Wake word detector released")

    def _run(self, state: _WorkerState) -> None:
        try:
            self._process_frames(state)
        finally:
            with self._lock:
                state.exited = True
                orphaned = state.orphaned
            if orphaned:
                state.engine.delete()
                self._logger.debug("Wake word detector released by worker")

    def _process_frames(self, state: _WorkerState) -> None:
        engine = state.engine
        while self._running.is_set():
            try:
                frame = state.frames.get(timeout=0.5)
            except queue.Empty:
                continue
            if frame is None:
                break
            if len(frame) != self.frame_length:
                self._logger.debug("Skipping frame of %s samples (expected %s)", len(frame), self.frame_length)
                continue
            try:
                index = engine.process(frame)
            except pvporcupine.PorcupineError as exc:
                self._running.clear()
                self._logger.warning("Wake word engine failed: %s", exc)
                if self._on_error:
                    self._on_error(EngineError(f"Wake word engine error: {exc}"))
                return
            if index >= 0 and self._on_detect:
                self._logger.info("Wake word detected: %s", self._label)
                self._on_detect(self._label)

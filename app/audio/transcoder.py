"""Transcoding Worker.

Converts recorded audio (webm/mp4/wav/...) into a mono Opus-in-Ogg voice
note with ffmpeg. Each worker owns its transcoder: loading (locating ffmpeg
and checking that the libopus encoder is compiled in) happens on first use
and is single-flight, so concurrent requests share one load. A failed load
drops the worker back to UNLOADED and the next request retries from scratch.

The worker speaks a small message protocol. Requests are ``preload``,
``transcode`` and ``ping``; it answers with ``progress``, ``result`` and
``error`` events through the ``on_event`` callback. Requests never raise:
every failure becomes an ``error`` event.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import structlog

from app.audio.inspector import MIN_TRANSCODE_OUTPUT_BYTES
from app.core.instrumentation import TRANSCODE_SECONDS

logger = structlog.get_logger()


class WorkerState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"


@dataclass(frozen=True)
class TranscodeProfile:
    """Fixed encoder parameters for voice-note delivery."""
    name: str
    sample_rate: int
    bitrate: str
    application: str | None = None
    frame_duration_ms: int | None = None


VOICE_PROFILE = TranscodeProfile("voice", sample_rate=16_000, bitrate="24k", application="voip", frame_duration_ms=20)
BASELINE_PROFILE = TranscodeProfile("baseline", sample_rate=48_000, bitrate="64k")

PROFILES = {p.name: p for p in (VOICE_PROFILE, BASELINE_PROFILE)}


def get_profile(name: str) -> TranscodeProfile:
    try:
        return PROFILES[name.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown transcode profile {name!r}; expected one of {sorted(PROFILES)}")


@dataclass
class WorkerRequest:
    type: str  # preload|transcode|ping
    input_bytes: bytes | None = None
    original_mime_type: str | None = None


@dataclass
class WorkerEvent:
    type: str  # progress|result|error
    message: str | None = None
    ogg_bytes: bytes | None = None
    error: str | None = None


class TranscoderLoadError(RuntimeError):
    """ffmpeg missing or built without libopus."""


class TranscodeError(RuntimeError):
    """A transcode did not produce a usable voice note."""


class TranscodeTimeoutError(TranscodeError):
    pass


class TranscodeAbortedError(TranscodeError):
    pass


def input_ext_from_mime(mime: str | None) -> str:
    """Staging extension for the input file; ffmpeg probes by content anyway."""
    mt = (mime or "").lower()
    if "webm" in mt:
        return "webm"
    if "mp4" in mt or "m4a" in mt:
        return "mp4"
    if "ogg" in mt:
        return "ogg"
    if "wav" in mt:
        return "wav"
    return "webm"


class TranscodeWorker:
    """Isolated ffmpeg transcoder with lazy, single-flight loading."""

    def __init__(
        self,
        profile: TranscodeProfile = VOICE_PROFILE,
        *,
        ffmpeg_path: str = "ffmpeg",
        on_event: Callable[[WorkerEvent], None] | None = None,
    ) -> None:
        self.profile = profile
        self.state = WorkerState.UNLOADED
        self._ffmpeg_path = ffmpeg_path
        self._ffmpeg: str | None = None
        self._on_event = on_event
        self._load_lock = asyncio.Lock()
        self._load_task: asyncio.Task | None = None
        self._proc: asyncio.subprocess.Process | None = None
        self._terminated = False

    @property
    def terminated(self) -> bool:
        return self._terminated

    def _emit(self, event: WorkerEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)

    def _progress(self, message: str) -> None:
        self._emit(WorkerEvent(type="progress", message=message))

    # ──────────────────────────────────────────────────────────────
    # Protocol entrypoint
    # ──────────────────────────────────────────────────────────────

    async def post(self, request: WorkerRequest) -> None:
        """Handle one request; the outcome arrives as events."""
        try:
            if self._terminated:
                raise TranscodeAbortedError("worker terminated")
            if request.type == "ping":
                self._progress("pong")
            elif request.type == "preload":
                await self.ensure_loaded()
                self._progress("[FFMPEG] ready")
            elif request.type == "transcode":
                if not request.input_bytes:
                    raise TranscodeError("transcode request without input")
                ogg = await self._transcode(request.input_bytes, request.original_mime_type)
                self._emit(WorkerEvent(type="result", ogg_bytes=ogg))
            else:
                self._emit(WorkerEvent(type="error", error="Unknown message type"))
        except Exception as e:
            logger.warning("transcoder.request_failed", request=request.type, error=str(e))
            self._emit(WorkerEvent(type="error", error=str(e) or type(e).__name__))

    # ──────────────────────────────────────────────────────────────
    # Loading
    # ──────────────────────────────────────────────────────────────

    async def ensure_loaded(self) -> None:
        """Bring the worker to READY; concurrent callers share one load.

        Raises:
            TranscoderLoadError: Load failed (state is reset to UNLOADED).
            TranscodeAbortedError: The worker was terminated mid-load.
        """
        async with self._load_lock:
            if self.state is WorkerState.READY:
                return
            if self._load_task is None:
                self.state = WorkerState.LOADING
                self._load_task = asyncio.create_task(self._load())
                self._load_task.add_done_callback(_retrieve_load_outcome)
            task = self._load_task
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if self._terminated and task.cancelled():
                raise TranscodeAbortedError("worker terminated during load")
            raise
        except Exception:
            async with self._load_lock:
                if self._load_task is task:
                    self._load_task = None
                    self.state = WorkerState.UNLOADED
            raise

    async def _load(self) -> None:
        self._progress("[FFMPEG] loading")
        binary = shutil.which(self._ffmpeg_path)
        if not binary:
            raise TranscoderLoadError(f"ffmpeg not found at {self._ffmpeg_path!r}")
        encoders = await self._probe_encoders(binary)
        if "libopus" not in encoders:
            raise TranscoderLoadError("ffmpeg build has no libopus encoder")
        if self._terminated:
            raise TranscodeAbortedError("worker terminated during load")
        self._ffmpeg = binary
        self.state = WorkerState.READY
        self._progress("[FFMPEG] loaded")
        logger.info("transcoder.loaded", ffmpeg=binary, profile=self.profile.name)

    async def _probe_encoders(self, binary: str) -> str:
        proc = await asyncio.create_subprocess_exec(
            binary, "-hide_banner", "-encoders",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._proc = proc
        try:
            stdout, _ = await proc.communicate()
        finally:
            self._proc = None
        if proc.returncode != 0:
            raise TranscoderLoadError(f"ffmpeg -encoders exited with {proc.returncode}")
        return stdout.decode(errors="replace")

    # ──────────────────────────────────────────────────────────────
    # Transcoding
    # ──────────────────────────────────────────────────────────────

    def build_args(self, input_path: str, output_path: str) -> list[str]:
        p = self.profile
        args = [
            self._ffmpeg or self._ffmpeg_path,
            "-hide_banner", "-nostdin", "-y",
            "-i", input_path,
            "-vn",
            "-ac", "1",
            "-ar", str(p.sample_rate),
            "-c:a", "libopus",
            "-b:a", p.bitrate,
        ]
        if p.application:
            args += ["-application", p.application]
        if p.frame_duration_ms:
            args += ["-frame_duration", str(p.frame_duration_ms)]
        args += ["-f", "ogg", output_path]
        return args

    async def _transcode(self, input_bytes: bytes, original_mime_type: str | None) -> bytes:
        await self.ensure_loaded()

        input_name = f"input.{input_ext_from_mime(original_mime_type)}"
        workdir = tempfile.mkdtemp(prefix="leadzap-transcode-")
        input_path = os.path.join(workdir, input_name)
        output_path = os.path.join(workdir, "output.ogg")
        started = time.perf_counter()
        try:
            self._progress(f"[FFMPEG] writeFile {input_name}")
            with open(input_path, "wb") as f:
                f.write(input_bytes)

            self._progress("[FFMPEG] exec -> ogg/opus")
            self._proc = await asyncio.create_subprocess_exec(
                *self.build_args(input_path, output_path),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await self._proc.communicate()
            returncode = self._proc.returncode
            self._proc = None
            if self._terminated:
                raise TranscodeAbortedError("worker terminated during transcode")
            if returncode != 0:
                tail = stderr[-300:].decode(errors="replace").strip()
                raise TranscodeError(f"ffmpeg exited with {returncode}: {tail}")

            self._progress("[FFMPEG] readFile output.ogg")
            with open(output_path, "rb") as f:
                out = f.read()
            if len(out) < MIN_TRANSCODE_OUTPUT_BYTES:
                raise TranscodeError(f"Transcoded output too small ({len(out)} bytes)")

            elapsed = time.perf_counter() - started
            TRANSCODE_SECONDS.observe(elapsed)
            logger.info(
                "transcoder.done",
                input_size=len(input_bytes),
                output_size=len(out),
                profile=self.profile.name,
                duration_ms=int(elapsed * 1000),
            )
            return out
        finally:
            _remove_staged(input_path, output_path, workdir)

    def terminate(self) -> None:
        """Tear the worker down: cancel a pending load and kill any running ffmpeg."""
        self._terminated = True
        load_task = self._load_task
        if load_task is not None and not load_task.done():
            load_task.cancel()
        proc = self._proc
        if proc is not None and proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            logger.info("transcoder.terminated", pid=proc.pid)


def _remove_staged(*paths: str) -> None:
    for path in paths:
        try:
            if os.path.isdir(path):
                os.rmdir(path)
            elif os.path.exists(path):
                os.remove(path)
        except OSError as e:
            logger.warning("transcoder.cleanup_failed", path=path, error=str(e))


def _retrieve_load_outcome(task: asyncio.Task) -> None:
    # A load can outlive every caller that awaited it.
    if not task.cancelled() and task.exception() is not None:
        logger.debug("transcoder.load_abandoned", error=str(task.exception()))

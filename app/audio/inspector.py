"""Container Inspector.

Reports size, duration, sample rate and channel count of an audio buffer.
Ogg/Opus is parsed natively; anything else goes through ``ffprobe``.
Inspection never raises: if decoding fails the caller gets the size only.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass

import structlog

from app.audio.ogg import OggParseError, is_likely_ogg_opus, read_opus_info

logger = structlog.get_logger()

MIN_UPLOAD_BYTES = 512
MIN_TRANSCODE_OUTPUT_BYTES = 1024
MIN_VOICE_NOTE_SECONDS = 0.5

_FFPROBE_TIMEOUT = 15.0


class AudioValidationError(ValueError):
    """Buffer is too small or too short to be a usable voice note."""


@dataclass
class AudioInfo:
    size: int
    duration: float | None = None
    sample_rate: int | None = None
    channels: int | None = None

    def as_log_dict(self) -> dict:
        return {
            "size_bytes": self.size,
            "duration_s": self.duration,
            "sample_rate_hz": self.sample_rate,
            "channels": self.channels,
        }


async def inspect_audio(data: bytes, ffprobe_path: str = "ffprobe") -> AudioInfo:
    """Decode metadata of ``data``; returns ``AudioInfo(size)`` on failure."""
    size = len(data)
    if is_likely_ogg_opus(data):
        try:
            info = read_opus_info(data)
            return AudioInfo(
                size=size,
                duration=info.duration,
                sample_rate=info.input_sample_rate,
                channels=info.channels,
            )
        except OggParseError as e:
            logger.warning("audio.inspect.ogg_parse_failed", error=str(e), size=size)
    try:
        return await _ffprobe(data, ffprobe_path)
    except (OSError, ValueError, KeyError, asyncio.TimeoutError) as e:
        logger.warning("audio.inspect.decode_failed", error=str(e) or type(e).__name__, size=size)
        return AudioInfo(size=size)


async def _ffprobe(data: bytes, ffprobe_path: str) -> AudioInfo:
    proc = await asyncio.create_subprocess_exec(
        ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        "-select_streams", "a:0",
        "pipe:0",
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(input=data), timeout=_FFPROBE_TIMEOUT)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    if proc.returncode != 0:
        raise OSError(f"ffprobe exited with {proc.returncode}: {stderr[:200].decode(errors='replace')}")

    probe = json.loads(stdout.decode() or "{}")
    streams = probe.get("streams") or []
    if not streams:
        raise ValueError("no audio stream")
    stream = streams[0]
    duration = stream.get("duration") or probe.get("format", {}).get("duration")
    return AudioInfo(
        size=len(data),
        duration=float(duration) if duration is not None else None,
        sample_rate=int(stream["sample_rate"]) if stream.get("sample_rate") else None,
        channels=int(stream["channels"]) if stream.get("channels") else None,
    )


def validate_voice_note(info: AudioInfo, *, min_bytes: int = MIN_UPLOAD_BYTES) -> None:
    """Reject buffers that are undersized or decode to under half a second.

    Raises:
        AudioValidationError: On either condition. Unknown duration passes.
    """
    if info.size < min_bytes:
        raise AudioValidationError(f"Converted audio too small (<{min_bytes}B): {info.size} bytes")
    if info.duration is not None and info.duration < MIN_VOICE_NOTE_SECONDS:
        raise AudioValidationError(f"Converted audio duration < {MIN_VOICE_NOTE_SECONDS}s: {info.duration}")

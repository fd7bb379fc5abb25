"""Client Audio Orchestrator.

Turns a recorded voice note into a delivered WhatsApp audio message:

  1. Ogg input skips transcoding; anything else goes through a fresh
     :class:`TranscodeWorker` with a hard timeout.
  2. The Ogg buffer is inspected and rejected if undersized or too short.
  3. It is uploaded to object storage under ``{company_id}/audio/...``.
  4. The relay is asked to deliver it; the server finishes asynchronously.

Every job is registered under its temporary message id with a
:class:`CancellationToken`, so the caller can abort a job in flight and query
how many are still outstanding. Failures are logged, never raised: the server
side leaves the message in ``failed`` if delivery never happens.
"""

from __future__ import annotations

import asyncio
import random
import string
import time
from dataclasses import dataclass

import structlog

from app.audio.inspector import MIN_UPLOAD_BYTES, inspect_audio, validate_voice_note
from app.audio.relay_client import RelayClient
from app.audio.transcoder import (
    VOICE_PROFILE,
    TranscodeAbortedError,
    TranscodeError,
    TranscodeProfile,
    TranscodeTimeoutError,
    TranscodeWorker,
    WorkerEvent,
    WorkerRequest,
)
from app.core.cancellation import CancellationToken, OperationCancelledError
from app.integrations.storage import StorageClient

logger = structlog.get_logger()

DEFAULT_TRANSCODE_TIMEOUT = 120.0
OGG_CONTENT_TYPE = "audio/ogg"


@dataclass
class AudioJob:
    job_id: str  # temporary message id on the client
    data: bytes
    mime_type: str
    contact_id: str
    company_id: str
    duration: float | None = None  # as measured by the recorder


def base_mime(mime_type: str | None) -> str:
    return (mime_type or "").split(";")[0].strip().lower()


def build_audio_filename(ext: str = "ogg") -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=5))
    return f"{int(time.time() * 1000)}-{suffix}.{ext}"


def build_audio_path(company_id: str, filename: str) -> str:
    return f"{company_id}/audio/{filename}"


async def transcode_to_ogg_in_worker(
    data: bytes,
    mime_type: str,
    token: CancellationToken | None = None,
    *,
    profile: TranscodeProfile = VOICE_PROFILE,
    ffmpeg_path: str = "ffmpeg",
    timeout: float = DEFAULT_TRANSCODE_TIMEOUT,
) -> bytes:
    """Transcode in a dedicated worker that is torn down afterwards.

    Completion, timeout and cancellation race; whichever comes first settles
    the call and the worker is terminated.

    Raises:
        TranscodeTimeoutError: No result within ``timeout`` seconds.
        TranscodeAbortedError: ``token`` was cancelled.
        TranscodeError: The worker reported an error.
    """
    if token is not None and token.cancelled:
        raise TranscodeAbortedError("Audio transcode aborted")

    events: asyncio.Queue[WorkerEvent] = asyncio.Queue()
    worker = TranscodeWorker(profile, ffmpeg_path=ffmpeg_path, on_event=events.put_nowait)

    async def _await_outcome() -> bytes:
        while True:
            event = await events.get()
            if event.type == "progress":
                logger.debug("audio.worker.progress", message=event.message)
            elif event.type == "result" and event.ogg_bytes is not None:
                return event.ogg_bytes
            elif event.type == "error":
                raise TranscodeError(event.error or "Transcode failed")

    post_task = asyncio.create_task(worker.post(WorkerRequest("transcode", data, mime_type)))
    outcome = asyncio.create_task(_await_outcome())
    cancelled = asyncio.create_task(token.wait()) if token is not None else None
    pending = {t for t in (outcome, cancelled) if t is not None}
    try:
        done, _ = await asyncio.wait(pending, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        if outcome in done:
            return outcome.result()
        if cancelled is not None and cancelled in done:
            raise TranscodeAbortedError("Audio transcode aborted")
        raise TranscodeTimeoutError("Audio transcode timeout (worker did not respond)")
    finally:
        worker.terminate()
        leftovers = [t for t in (post_task, outcome, cancelled) if t is not None]
        for task in leftovers:
            if not task.done():
                task.cancel()
        await asyncio.gather(*leftovers, return_exceptions=True)


class AudioProcessor:
    """Runs voice-note jobs and keeps a registry of the ones in flight."""

    def __init__(
        self,
        storage: StorageClient,
        relay: RelayClient,
        *,
        profile: TranscodeProfile = VOICE_PROFILE,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        transcode_timeout: float = DEFAULT_TRANSCODE_TIMEOUT,
    ) -> None:
        self._storage = storage
        self._relay = relay
        self._profile = profile
        self._ffmpeg_path = ffmpeg_path
        self._ffprobe_path = ffprobe_path
        self._transcode_timeout = transcode_timeout
        self._jobs: dict[str, CancellationToken] = {}

    # ──────────────────────────────────────────────────────────────
    # Registry
    # ──────────────────────────────────────────────────────────────

    def is_processing_audio(self) -> bool:
        return bool(self._jobs)

    def get_pending_audio_count(self) -> int:
        return len(self._jobs)

    def cancel_audio_processing(self, job_id: str) -> bool:
        """Abort a job in flight. Returns False if it is unknown or finished."""
        token = self._jobs.pop(job_id, None)
        if token is None:
            return False
        token.cancel("cancelled by user")
        logger.info("audio.processing_cancelled", job_id=job_id)
        return True

    def submit(self, job: AudioJob) -> asyncio.Task:
        """Start a job without waiting for it."""
        return asyncio.create_task(self.process_and_send_audio_async(job), name=f"audio-job-{job.job_id}")

    async def preload(self) -> bool:
        """Warm the transcoder so the first recording does not pay for the load."""
        worker = TranscodeWorker(self._profile, ffmpeg_path=self._ffmpeg_path)
        try:
            await worker.ensure_loaded()
        except Exception as e:
            logger.warning("audio.preload_failed", error=str(e))
            return False
        finally:
            worker.terminate()
        return True

    # ──────────────────────────────────────────────────────────────
    # Pipeline
    # ──────────────────────────────────────────────────────────────

    async def process_and_send_audio_async(self, job: AudioJob) -> str | None:
        """Run the pipeline for ``job``.

        Returns:
            The server message id, or None when the job failed or was cancelled.
        """
        token = CancellationToken()
        self._jobs[job.job_id] = token
        started = time.perf_counter()
        try:
            return await self._process(job, token)
        except (OperationCancelledError, TranscodeAbortedError):
            logger.info("audio.processing_aborted", job_id=job.job_id)
            return None
        except Exception as e:
            logger.error(
                "audio.processing_failed",
                job_id=job.job_id,
                mime_type=job.mime_type,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None
        finally:
            if self._jobs.get(job.job_id) is token:
                del self._jobs[job.job_id]
            logger.debug("audio.processing_finished", job_id=job.job_id, duration_ms=int((time.perf_counter() - started) * 1000))

    async def _process(self, job: AudioJob, token: CancellationToken) -> str | None:
        token.raise_if_cancelled()
        mime = base_mime(job.mime_type)
        if "ogg" in mime:
            logger.info("audio.fast_path", job_id=job.job_id, size=len(job.data))
            ogg = job.data
        else:
            ogg = await transcode_to_ogg_in_worker(
                job.data,
                job.mime_type,
                token,
                profile=self._profile,
                ffmpeg_path=self._ffmpeg_path,
                timeout=self._transcode_timeout,
            )

        info = await inspect_audio(ogg, self._ffprobe_path)
        logger.info(
            "audio.post_conversion_inspection",
            job_id=job.job_id,
            target_sample_rate_hz=self._profile.sample_rate,
            **info.as_log_dict(),
        )
        validate_voice_note(info, min_bytes=MIN_UPLOAD_BYTES)

        filename = build_audio_filename()
        path = build_audio_path(job.company_id, filename)
        public_url = await token.run(self._storage.upload(path, ogg, OGG_CONTENT_TYPE))

        token.raise_if_cancelled()
        result = await token.run(
            self._relay.send_audio(
                contact_id=job.contact_id,
                media_url=public_url,
                media_filename=filename,
                audio_duration=job.duration if job.duration is not None else info.duration,
            )
        )
        return result.get("message_id")


__all__ = [
    "AudioJob",
    "AudioProcessor",
    "TranscodeAbortedError",
    "TranscodeTimeoutError",
    "build_audio_filename",
    "build_audio_path",
    "transcode_to_ogg_in_worker",
]

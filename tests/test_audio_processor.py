"""LeadZap – Client Audio Orchestrator Tests.

Tests: Ogg fast path, transcode race (timeout / cancellation), job registry,
upload and relay sequencing.
"""

import asyncio
import re

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from app.audio.processor import (
    AudioJob,
    AudioProcessor,
    build_audio_filename,
    build_audio_path,
    transcode_to_ogg_in_worker,
)
from app.audio.relay_client import RelayClient, RelayError
from app.audio.transcoder import (
    TranscodeAbortedError,
    TranscodeError,
    TranscoderLoadError,
    TranscodeTimeoutError,
    TranscodeWorker,
    WorkerEvent,
)
from app.core.cancellation import CancellationToken
from tests.audio_fixtures import build_ogg_opus

AUDIO_PATH = re.compile(r"^company-1/audio/\d{13}-[a-z0-9]{5}\.ogg$")


def _processor(upload=None, send_audio=None) -> tuple[AudioProcessor, MagicMock, MagicMock]:
    storage = MagicMock()
    storage.upload = upload or AsyncMock(return_value="https://cdn.test/public/audio.ogg")
    relay = MagicMock()
    relay.send_audio = send_audio or AsyncMock(return_value={"success": True, "message_id": "msg-1", "status": "processing"})
    return AudioProcessor(storage, relay), storage, relay


def _job(mime: str = "audio/ogg;codecs=opus", data: bytes | None = None, duration: float | None = 2.0) -> AudioJob:
    return AudioJob(
        job_id="temp-1",
        data=data if data is not None else build_ogg_opus(2.0),
        mime_type=mime,
        contact_id="contact-1",
        company_id="company-1",
        duration=duration,
    )


async def _hang(self, request) -> None:
    await asyncio.Event().wait()


class TestPaths:
    def test_filename_shape(self) -> None:
        assert re.match(r"^\d{13}-[a-z0-9]{5}\.ogg$", build_audio_filename())

    def test_filenames_differ(self) -> None:
        assert len({build_audio_filename() for _ in range(20)}) == 20

    def test_path_is_company_scoped(self) -> None:
        assert build_audio_path("company-1", "1.ogg") == "company-1/audio/1.ogg"


class TestProcessAndSend:
    @pytest.mark.anyio
    async def test_ogg_fast_path_skips_worker(self) -> None:
        processor, storage, relay = _processor()
        with patch("app.audio.processor.transcode_to_ogg_in_worker", new=AsyncMock()) as transcode:
            message_id = await processor.process_and_send_audio_async(_job())

        assert message_id == "msg-1"
        transcode.assert_not_called()

        path, data, content_type = storage.upload.call_args.args
        assert AUDIO_PATH.match(path)
        assert content_type == "audio/ogg"
        kwargs = relay.send_audio.call_args.kwargs
        assert kwargs["contact_id"] == "contact-1"
        assert kwargs["media_url"] == "https://cdn.test/public/audio.ogg"
        assert kwargs["media_filename"] == path.rsplit("/", 1)[1]
        assert kwargs["audio_duration"] == 2.0

    @pytest.mark.anyio
    async def test_webm_is_transcoded(self) -> None:
        processor, storage, _ = _processor()
        ogg = build_ogg_opus(3.0)
        with patch("app.audio.processor.transcode_to_ogg_in_worker", new=AsyncMock(return_value=ogg)) as transcode:
            message_id = await processor.process_and_send_audio_async(
                _job(mime="audio/webm;codecs=opus", data=b"\x1a\x45\xdf\xa3" * 300, duration=None)
            )

        assert message_id == "msg-1"
        assert transcode.call_args.args[1] == "audio/webm;codecs=opus"
        assert storage.upload.call_args.args[1] is ogg

    @pytest.mark.anyio
    async def test_measured_duration_falls_back_to_inspection(self) -> None:
        processor, _, relay = _processor()
        await processor.process_and_send_audio_async(_job(data=build_ogg_opus(4.0), duration=None))
        assert relay.send_audio.call_args.kwargs["audio_duration"] == pytest.approx(4.0)

    @pytest.mark.anyio
    async def test_too_short_note_is_not_uploaded(self) -> None:
        processor, storage, relay = _processor()
        result = await processor.process_and_send_audio_async(_job(data=build_ogg_opus(0.2)))
        assert result is None
        storage.upload.assert_not_called()
        relay.send_audio.assert_not_called()
        assert processor.get_pending_audio_count() == 0

    @pytest.mark.anyio
    async def test_transcode_failure_is_logged_not_raised(self) -> None:
        processor, storage, _ = _processor()
        failing = AsyncMock(side_effect=TranscodeTimeoutError("Audio transcode timeout (worker did not respond)"))
        with patch("app.audio.processor.transcode_to_ogg_in_worker", new=failing):
            result = await processor.process_and_send_audio_async(_job(mime="audio/webm"))
        assert result is None
        storage.upload.assert_not_called()

    @pytest.mark.anyio
    async def test_relay_failure_returns_none(self) -> None:
        processor, _, _ = _processor(send_audio=AsyncMock(side_effect=RuntimeError("relay down")))
        assert await processor.process_and_send_audio_async(_job()) is None


class TestRegistry:
    @pytest.mark.anyio
    async def test_cancel_aborts_upload_in_flight(self) -> None:
        upload_started = asyncio.Event()

        async def slow_upload(path, data, content_type):
            upload_started.set()
            await asyncio.Event().wait()

        processor, _, relay = _processor(upload=AsyncMock(side_effect=slow_upload))
        task = processor.submit(_job())
        await asyncio.wait_for(upload_started.wait(), timeout=2)

        assert processor.is_processing_audio()
        assert processor.get_pending_audio_count() == 1
        assert processor.cancel_audio_processing("temp-1") is True

        assert await asyncio.wait_for(task, timeout=2) is None
        relay.send_audio.assert_not_called()
        assert not processor.is_processing_audio()
        assert processor.get_pending_audio_count() == 0

    def test_cancel_unknown_job(self) -> None:
        processor, _, _ = _processor()
        assert processor.cancel_audio_processing("nope") is False

    @pytest.mark.anyio
    async def test_registry_is_empty_after_success(self) -> None:
        processor, _, _ = _processor()
        await processor.process_and_send_audio_async(_job())
        assert processor.get_pending_audio_count() == 0

    @pytest.mark.anyio
    async def test_preload(self) -> None:
        processor, _, _ = _processor()
        with patch.object(TranscodeWorker, "ensure_loaded", new=AsyncMock()):
            assert await processor.preload() is True
        with patch.object(TranscodeWorker, "ensure_loaded", new=AsyncMock(side_effect=TranscoderLoadError("no ffmpeg"))):
            assert await processor.preload() is False


class TestTranscodeInWorker:
    @pytest.mark.anyio
    async def test_returns_worker_result(self) -> None:
        async def fake_post(self, request):
            self._emit(WorkerEvent(type="progress", message="[FFMPEG] exec -> ogg/opus"))
            self._emit(WorkerEvent(type="result", ogg_bytes=b"R" * 2048))

        with patch.object(TranscodeWorker, "post", new=fake_post), \
                patch.object(TranscodeWorker, "terminate") as terminate:
            result = await transcode_to_ogg_in_worker(b"webm", "audio/webm")

        assert result == b"R" * 2048
        terminate.assert_called_once()

    @pytest.mark.anyio
    async def test_worker_error_is_raised(self) -> None:
        async def fake_post(self, request):
            self._emit(WorkerEvent(type="error", error="Transcoded output too small (12 bytes)"))

        with patch.object(TranscodeWorker, "post", new=fake_post):
            with pytest.raises(TranscodeError, match="too small"):
                await transcode_to_ogg_in_worker(b"webm", "audio/webm")

    @pytest.mark.anyio
    async def test_timeout_tears_worker_down(self) -> None:
        with patch.object(TranscodeWorker, "post", new=_hang), \
                patch.object(TranscodeWorker, "terminate") as terminate:
            with pytest.raises(TranscodeTimeoutError):
                await transcode_to_ogg_in_worker(b"webm", "audio/webm", timeout=0.05)
        terminate.assert_called_once()

    @pytest.mark.anyio
    async def test_cancellation_tears_worker_down(self) -> None:
        token = CancellationToken()
        with patch.object(TranscodeWorker, "post", new=_hang), \
                patch.object(TranscodeWorker, "terminate") as terminate:
            call = asyncio.create_task(transcode_to_ogg_in_worker(b"webm", "audio/webm", token, timeout=5))
            await asyncio.sleep(0.01)
            token.cancel()
            with pytest.raises(TranscodeAbortedError):
                await call
        terminate.assert_called_once()

    @pytest.mark.anyio
    async def test_already_cancelled_token(self) -> None:
        token = CancellationToken()
        token.cancel()
        with patch.object(TranscodeWorker, "post", new=AsyncMock()) as post:
            with pytest.raises(TranscodeAbortedError):
                await transcode_to_ogg_in_worker(b"webm", "audio/webm", token)
        post.assert_not_called()


class TestRelayClient:
    @pytest.mark.anyio
    async def test_send_audio_payload(self) -> None:
        response = MagicMock()
        response.status_code = 202
        response.json.return_value = {"success": True, "message_id": "msg-7", "status": "processing"}
        with patch("httpx.AsyncClient") as mock_cls:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=response)
            mock_http.__aenter__ = AsyncMock(return_value=mock_http)
            mock_http.__aexit__ = AsyncMock(return_value=False)
            mock_cls.return_value = mock_http

            result = await RelayClient("http://relay.test/", "user-token").send_audio(
                contact_id="contact-1",
                media_url="https://cdn.test/a.ogg",
                media_filename="a.ogg",
                audio_duration=3.2,
            )

        assert result["message_id"] == "msg-7"
        assert mock_http.post.call_args.args[0] == "http://relay.test/functions/whatsapp-cloud-send"
        body = mock_http.post.call_args.kwargs["json"]
        assert body["message_type"] == "audio"
        assert body["content"] == "[AUDIO]"
        assert body["audio_duration"] == 3.2
        assert mock_http.post.call_args.kwargs["headers"]["Authorization"] == "Bearer user-token"

    @pytest.mark.anyio
    async def test_error_body_is_raised(self) -> None:
        response = MagicMock()
        response.status_code = 404
        response.json.return_value = {"error": "Contact not found"}
        with patch("httpx.AsyncClient") as mock_cls:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=response)
            mock_http.__aenter__ = AsyncMock(return_value=mock_http)
            mock_http.__aexit__ = AsyncMock(return_value=False)
            mock_cls.return_value = mock_http

            with pytest.raises(RelayError, match="Contact not found") as exc:
                await RelayClient("http://relay.test", "t").send({"action": "send"})
        assert exc.value.status_code == 404

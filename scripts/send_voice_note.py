"""Send a local audio file as a WhatsApp voice note through the relay.

    python scripts/send_voice_note.py note.webm --company-id <uuid> --contact-id <uuid> --token <bearer>
    python scripts/send_voice_note.py note.ogg --inspect
"""

import argparse
import asyncio
import mimetypes
import os
import sys
import uuid

# Ensure app is in path
sys.path.append(os.getcwd())

from app.audio.inspector import inspect_audio
from app.audio.processor import AudioJob, AudioProcessor
from app.audio.relay_client import RelayClient
from app.audio.transcoder import get_profile
from app.core.instrumentation import setup_logging
from app.integrations.storage import StorageClient
from config.settings import get_settings


def _guess_mime(path: str) -> str:
    mime, _ = mimetypes.guess_type(path)
    if path.lower().endswith((".ogg", ".opus")):
        return "audio/ogg"
    return mime or "audio/webm"


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    with open(args.path, "rb") as f:
        data = f.read()

    if args.inspect:
        info = await inspect_audio(data, settings.ffprobe_path)
        print(info.as_log_dict())
        return 0

    token = args.token or os.getenv("LEADZAP_TOKEN", "")
    if not (args.company_id and args.contact_id and token):
        print("--company-id, --contact-id and --token (or LEADZAP_TOKEN) are required to send.")
        return 2

    processor = AudioProcessor(
        StorageClient(settings.storage_url, settings.storage_service_key, settings.storage_bucket),
        RelayClient(args.relay_url or settings.relay_url, token, timeout=settings.provider_timeout_seconds),
        profile=get_profile(settings.transcode_profile),
        ffmpeg_path=settings.ffmpeg_path,
        ffprobe_path=settings.ffprobe_path,
        transcode_timeout=settings.transcode_timeout_seconds,
    )
    job = AudioJob(
        job_id=f"temp-{uuid.uuid4()}",
        data=data,
        mime_type=args.mime or _guess_mime(args.path),
        contact_id=args.contact_id,
        company_id=args.company_id,
        duration=args.duration,
    )
    message_id = await processor.process_and_send_audio_async(job)
    if not message_id:
        print("Voice note was not accepted (see log).")
        return 1
    print(f"Queued voice note, message_id={message_id}")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Send a voice note through the WhatsApp relay.")
    parser.add_argument("path", help="Audio file (webm, mp4/m4a, wav, ogg)")
    parser.add_argument("--company-id", help="Company owning the contact")
    parser.add_argument("--contact-id", help="Target contact")
    parser.add_argument("--token", help="User bearer token for the relay")
    parser.add_argument("--relay-url", help="Overrides RELAY_URL")
    parser.add_argument("--mime", help="Declared MIME type (guessed from the extension otherwise)")
    parser.add_argument("--duration", type=float, help="Measured duration in seconds")
    parser.add_argument("--inspect", action="store_true", help="Only print container metadata")
    args = parser.parse_args()

    setup_logging(get_settings().log_level)
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()

"""End-to-end smoke test for a running relay gateway.

Streams a 16-bit mono PCM WAV file to the relay WebSocket in real-time
sized chunks, prints every device command and transcript the gateway sends
back, and writes the assistant's reply audio to a WAV file.

Methodology:
    1. Connect to the relay endpoint with RelayClient.
    2. Send the input WAV as binary frames (CHUNK_MS per frame, paced).
    3. Send trailing silence so server-side VAD closes the turn.
    4. Collect response audio until response_end or the wait timeout.
    5. Write the collected audio and print a summary.

Usage:
    python -m scripts.relay_smoke_test input.wav [--url ws://localhost:3001/ws_recall] [--output reply.wav]

Requires: a gateway started with OPENAI_API_KEY configured.
"""

import argparse
import asyncio
import logging
import sys
import wave
from dataclasses import dataclass, field
from pathlib import Path

from voice_gateway.services.realtime_relay import Command, RelayClient, RelayClientHandler
from voice_gateway.services.realtime_relay.models import CHANNELS, DEFAULT_SAMPLE_RATE, SAMPLE_WIDTH_BYTES

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

CHUNK_MS = 100
TRAILING_SILENCE_MS = 1500


@dataclass
class SmokeResult:
    audio: bytearray = field(default_factory=bytearray)
    audio_frames: int = 0
    commands: list[Command] = field(default_factory=list)
    transcripts: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class RecordingHandler(RelayClientHandler):
    """Collects everything the gateway sends during the run."""

    def __init__(self) -> None:
        self.result = SmokeResult()
        self.response_done = asyncio.Event()

    async def on_error(self, message: str) -> None:
        logger.error("Gateway error: %s", message)
        self.result.errors.append(message)

    async def on_audio(self, data: bytes) -> None:
        self.result.audio.extend(data)
        self.result.audio_frames += 1

    async def on_response_end(self) -> None:
        self.response_done.set()

    async def on_transcript(self, transcript: str | None) -> None:
        if transcript:
            print(f"  transcript: {transcript}")
            self.result.transcripts.append(transcript)

    async def apply_command(self, command: Command) -> None:
        print(f"  command: {command.model_dump_json()}")
        self.result.commands.append(command)


def read_pcm(path: Path) -> bytes:
    """Read a WAV file, checking it matches the relay audio format."""
    with wave.open(str(path), "rb") as wav:
        if wav.getnchannels() != CHANNELS or wav.getsampwidth() != SAMPLE_WIDTH_BYTES:
            raise ValueError(f"{path} must be 16-bit mono PCM")
        if wav.getframerate() != DEFAULT_SAMPLE_RATE:
            raise ValueError(f"{path} must be sampled at {DEFAULT_SAMPLE_RATE} Hz, got {wav.getframerate()}")
        return wav.readframes(wav.getnframes())


def write_pcm(path: Path, audio: bytes) -> None:
    with wave.open(str(path), "wb") as wav:
        wav.setnchannels(CHANNELS)
        wav.setsampwidth(SAMPLE_WIDTH_BYTES)
        wav.setframerate(DEFAULT_SAMPLE_RATE)
        wav.writeframes(audio)


async def run_smoke_test(url: str, pcm: bytes, wait_seconds: float) -> SmokeResult:
    handler = RecordingHandler()
    client = RelayClient(url, handler=handler, max_reconnect_attempts=0)
    runner = asyncio.create_task(client.run())

    try:
        await client.wait_connected(timeout=10.0)

        chunk_bytes = DEFAULT_SAMPLE_RATE * SAMPLE_WIDTH_BYTES * CHUNK_MS // 1000
        silence = bytes(DEFAULT_SAMPLE_RATE * SAMPLE_WIDTH_BYTES * TRAILING_SILENCE_MS // 1000)
        payload = pcm + silence
        logger.info("Streaming %d bytes in %d ms chunks", len(payload), CHUNK_MS)

        for offset in range(0, len(payload), chunk_bytes):
            await client.send_audio(payload[offset : offset + chunk_bytes])
            await asyncio.sleep(CHUNK_MS / 1000)

        try:
            await asyncio.wait_for(handler.response_done.wait(), timeout=wait_seconds)
        except asyncio.TimeoutError:
            logger.warning("No response_end within %.0fs", wait_seconds)
    finally:
        await client.disconnect()
        await runner

    return handler.result


def print_summary(result: SmokeResult) -> None:
    duration_ms = len(result.audio) / (DEFAULT_SAMPLE_RATE * SAMPLE_WIDTH_BYTES) * 1000
    print("\n" + "=" * 60)
    print("RELAY SMOKE TEST")
    print("=" * 60)
    print(f"Audio frames received : {result.audio_frames}")
    print(f"Reply audio           : {len(result.audio)} bytes ({duration_ms:.0f} ms)")
    print(f"Commands              : {[c.type for c in result.commands] or 'none'}")
    print(f"Transcripts           : {len(result.transcripts)}")
    print(f"Errors                : {result.errors or 'none'}")
    print()


def main() -> None:
    parser = argparse.ArgumentParser(description="Stream a WAV file through the relay gateway")
    parser.add_argument("input", type=Path, help="24 kHz 16-bit mono WAV file to send")
    parser.add_argument(
        "--url",
        type=str,
        default="ws://localhost:3001/ws_recall",
        help="Relay WebSocket URL (default: ws://localhost:3001/ws_recall)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("scripts/relay_reply.wav"),
        help="Where to write the reply audio (default: scripts/relay_reply.wav)",
    )
    parser.add_argument(
        "--wait",
        type=float,
        default=15.0,
        help="Seconds to wait for the response after sending (default: 15)",
    )
    args = parser.parse_args()

    try:
        pcm = read_pcm(args.input)
    except (OSError, ValueError, wave.Error) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    result = asyncio.run(run_smoke_test(args.url, pcm, args.wait))

    print_summary(result)
    if result.audio:
        write_pcm(args.output, bytes(result.audio))
        print(f"Reply audio written to {args.output}")


if __name__ == "__main__":
    main()

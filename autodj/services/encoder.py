"""FFmpeg interactions with proper error handling."""
from __future__ import annotations

import logging
from pathlib import Path

import ffmpeg

from autodj.core.exceptions import TranscodeFailed
from autodj.utils.process import CommandError, run_captured

logger = logging.getLogger(__name__)

SAMPLE_RATE = 44100
CHANNELS = 2

# Every byte fed into the relay pipe shares one sample rate and layout so the
# persistent encoder never sees a format change between tracks.
_AUDIO_OPTIONS = {"acodec": "libmp3lame", "ar": SAMPLE_RATE, "ac": CHANNELS, "f": "mp3"}


class Encoder:
    """Build and run ffmpeg commands for the relay."""

    def __init__(self, *, binary: str = "ffmpeg", timeout: float = 900.0) -> None:
        self.binary = binary
        self.timeout = timeout

    def encode_once_command(self, source: Path, target: Path, bitrate: str) -> list[str]:
        stream = (
            ffmpeg
            .input(str(source))
            .output(str(target), vn=None, audio_bitrate=bitrate, **_AUDIO_OPTIONS)
            .global_args("-hide_banner", "-loglevel", "warning")
            .overwrite_output()
        )
        return stream.compile(cmd=self.binary)

    def silence_command(self, target: Path, seconds: float, bitrate: str) -> list[str]:
        stream = (
            ffmpeg
            .input(f"anullsrc=channel_layout=stereo:sample_rate={SAMPLE_RATE}", f="lavfi", t=seconds)
            .output(str(target), audio_bitrate=bitrate, **_AUDIO_OPTIONS)
            .global_args("-hide_banner", "-loglevel", "warning")
            .overwrite_output()
        )
        return stream.compile(cmd=self.binary)

    def persistent_command(self, pipe_path: Path, ingest_url: str, bitrate: str, *, station_name: str) -> list[str]:
        """Command for the long-running relay: pipe in, Icecast out, paced in real time."""

        source = ffmpeg.input(str(pipe_path), f="mp3", re=None)
        stream = (
            ffmpeg
            .output(
                source.audio,
                ingest_url,
                audio_bitrate=bitrate,
                content_type="audio/mpeg",
                ice_name=station_name,
                **_AUDIO_OPTIONS,
            )
            .global_args("-hide_banner", "-loglevel", "warning", "-nostdin")
        )
        return stream.compile(cmd=self.binary)

    async def encode_once(self, source: Path, target: Path, bitrate: str) -> None:
        """Transcode ``source`` into an MP3 at ``target``."""

        command = self.encode_once_command(source, target, bitrate)
        logger.info("Starting transcode", extra={"source": str(source), "target": str(target)})
        try:
            await run_captured(command, timeout=self.timeout)
        except CommandError as exc:
            logger.error("FFmpeg transcode failed", extra={"source": str(source), "stderr": exc.stderr[-2000:]})
            raise TranscodeFailed(f"Transcoding {source.name} failed: {exc}") from exc

    async def render_silence(self, target: Path, seconds: float, bitrate: str) -> Path:
        """Render ``seconds`` of silence as an MP3."""

        command = self.silence_command(target, seconds, bitrate)
        try:
            await run_captured(command, timeout=min(self.timeout, 60.0))
        except CommandError as exc:
            raise TranscodeFailed(f"Rendering silence failed: {exc}") from exc
        return target

"""FFmpeg-based HLS encoder.

Validates a master file with ffprobe, then encodes one ladder rung at a time
into an HLS VOD playlist plus MPEG-TS segments. Segments are handed to an
async callback as soon as they are complete, so the caller can upload them
while the encoder keeps running.

A segment is complete once the encoder has started writing the next one, or
the encoder has exited successfully.

Cancellation:
    Setting the `cancel_event` (or cancelling the awaiting task) terminates
    the ffmpeg process. The event path raises JobCancelled.

Error Classification:
    Corrupt input, missing video streams and unsupported codecs raise
    FatalEncoderError (never retried). Any other non-zero exit raises
    EncoderError (retried by the worker while attempts remain).
"""

import asyncio
import contextlib
import json
import re
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from recipestream.config import get_ffmpeg_binary, get_ffprobe_binary, get_hls_segment_seconds
from recipestream.exceptions import EncoderError, FatalEncoderError, JobCancelled
from recipestream.utils.cli_wrapper import MediaToolError, run_media_tool

log = structlog.get_logger(__name__)

PLAYLIST_NAME = "index.m3u8"
SEGMENT_PATTERN = "seg_%05d.ts"
SEGMENT_GLOB = "seg_*.ts"

_FATAL_PATTERNS = (
    re.compile(r"Invalid data found when processing input", re.IGNORECASE),
    re.compile(r"moov atom not found", re.IGNORECASE),
    re.compile(r"could not find codec parameters", re.IGNORECASE),
    re.compile(r"Unsupported codec", re.IGNORECASE),
    re.compile(r"Decoder \(codec .*\) not found", re.IGNORECASE),
    re.compile(r"does not contain any stream", re.IGNORECASE),
    re.compile(r"Output file #0 does not contain any stream", re.IGNORECASE),
)

SegmentCallback = Callable[[Path], Awaitable[None]]


@dataclass(frozen=True)
class Rung:
    """One ladder entry."""

    width: int
    height: int
    bitrate_kbps: int

    @property
    def label(self) -> str:
        return f"{self.height}p"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Rung":
        return cls(
            width=int(data["width"]),
            height=int(data["height"]),
            bitrate_kbps=int(data["bitrate_kbps"]),
        )

    def to_dict(self) -> dict[str, int]:
        return {"width": self.width, "height": self.height, "bitrate_kbps": self.bitrate_kbps}


@dataclass
class MediaInfo:
    duration_seconds: float | None
    width: int | None
    height: int | None
    video_codec: str | None


@dataclass
class RungResult:
    """Outcome of encoding one rung.

    Attributes:
        playlist_path: Local path of the rung's HLS playlist.
        segment_names: Segment file names in playlist order.
        duration_seconds: Sum of the playlist's segment durations.
    """

    rung: Rung
    playlist_path: Path
    segment_names: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0


def is_fatal_stderr(stderr: str) -> bool:
    return any(pattern.search(stderr) for pattern in _FATAL_PATTERNS)


def parse_playlist(text: str) -> tuple[list[str], float]:
    """Return (segment URIs in order, total duration) of an HLS media playlist."""
    segments: list[str] = []
    total = 0.0
    for line in text.splitlines():
        line = line.strip()
        if line.startswith("#EXTINF:"):
            value = line[len("#EXTINF:"):].split(",", 1)[0]
            with contextlib.suppress(ValueError):
                total += float(value)
        elif line and not line.startswith("#"):
            segments.append(line)
    return segments, total


def build_master_playlist(renditions: list[dict[str, Any]]) -> str:
    """Render an HLS master playlist listing every rendition.

    Each rendition dict needs "label", "bitrate_kbps", "width" and "height";
    variant URIs are relative ("{label}/index.m3u8").
    """
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
    for rendition in sorted(renditions, key=lambda r: r["bitrate_kbps"], reverse=True):
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={rendition['bitrate_kbps'] * 1000},"
            f"RESOLUTION={rendition['width']}x{rendition['height']}"
        )
        lines.append(f"{rendition['label']}/{PLAYLIST_NAME}")
    return "\n".join(lines) + "\n"


class FFmpegEncoder:
    """Runs ffprobe/ffmpeg for the transcode workers.

    Args:
        ffmpeg: ffmpeg binary (default: FFMPEG_BINARY).
        ffprobe: ffprobe binary (default: FFPROBE_BINARY).
        segment_seconds: Target HLS segment duration.
        poll_interval: Seconds between scans for completed segments.
    """

    def __init__(
        self,
        ffmpeg: str | None = None,
        ffprobe: str | None = None,
        segment_seconds: int | None = None,
        poll_interval: float = 0.5,
    ) -> None:
        self.ffmpeg = ffmpeg or get_ffmpeg_binary()
        self.ffprobe = ffprobe or get_ffprobe_binary()
        self.segment_seconds = segment_seconds or get_hls_segment_seconds()
        self.poll_interval = poll_interval

    async def probe(self, source: Path) -> MediaInfo:
        """Validate the master file and read its video stream parameters.

        Raises:
            FatalEncoderError: If the file is unreadable or has no video stream.
        """
        try:
            result = await run_media_tool(
                self.ffprobe,
                [
                    "-v", "error",
                    "-print_format", "json",
                    "-show_format",
                    "-show_streams",
                    str(source),
                ],
                timeout=120,
            )
        except MediaToolError as e:
            raise FatalEncoderError("ffprobe rejected input", exit_code=e.exit_code, stderr=e.stderr) from e

        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise FatalEncoderError("ffprobe returned unparseable output") from e

        video = next((s for s in data.get("streams", []) if s.get("codec_type") == "video"), None)
        if video is None:
            raise FatalEncoderError("input contains no video stream")

        duration = data.get("format", {}).get("duration")
        return MediaInfo(
            duration_seconds=float(duration) if duration else None,
            width=video.get("width"),
            height=video.get("height"),
            video_codec=video.get("codec_name"),
        )

    def build_command(self, source: Path, rung: Rung, output_dir: Path) -> list[str]:
        bitrate = f"{rung.bitrate_kbps}k"
        return [
            self.ffmpeg,
            "-hide_banner",
            "-nostdin",
            "-y",
            "-i", str(source),
            "-vf", f"scale=w={rung.width}:h={rung.height}:force_original_aspect_ratio=decrease,"
                   f"pad={rung.width}:{rung.height}:(ow-iw)/2:(oh-ih)/2",
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-profile:v", "main",
            "-b:v", bitrate,
            "-maxrate", bitrate,
            "-bufsize", f"{rung.bitrate_kbps * 2}k",
            "-g", str(self.segment_seconds * 30),
            "-sc_threshold", "0",
            "-c:a", "aac",
            "-b:a", "128k",
            "-ac", "2",
            "-f", "hls",
            "-hls_time", str(self.segment_seconds),
            "-hls_playlist_type", "vod",
            "-hls_segment_filename", str(output_dir / SEGMENT_PATTERN),
            str(output_dir / PLAYLIST_NAME),
        ]

    async def encode_rung(
        self,
        source: Path,
        rung: Rung,
        output_dir: Path,
        on_segment: SegmentCallback,
        cancel_event: asyncio.Event | None = None,
    ) -> RungResult:
        """Encode one rung, streaming completed segments to `on_segment`.

        Args:
            source: Local master file.
            rung: Ladder entry to encode.
            output_dir: Empty directory for the playlist and segments.
            on_segment: Awaited once per completed segment, in order.
            cancel_event: Terminates the encode when set.

        Raises:
            JobCancelled: If cancel_event was set.
            FatalEncoderError: On corrupt or unsupported input.
            EncoderError: On any other encoder failure.
        """
        command = self.build_command(source, rung, output_dir)
        log.info("encode_rung_start", rung=rung.label, bitrate_kbps=rung.bitrate_kbps)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise EncoderError(f"encoder binary not found: {self.ffmpeg}") from e

        stderr_tail: deque[str] = deque(maxlen=50)
        drain = asyncio.create_task(self._drain(process, stderr_tail))
        delivered: set[str] = set()

        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    raise JobCancelled("cancellation requested")
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    # Still running: everything but the newest segment is complete
                    await self._deliver(output_dir, delivered, on_segment, include_last=False)
                    continue
                break

            await drain
            stderr = "\n".join(stderr_tail)
            if process.returncode != 0:
                if is_fatal_stderr(stderr):
                    raise FatalEncoderError(
                        f"encoder rejected input for {rung.label}",
                        exit_code=process.returncode,
                        stderr=stderr,
                    )
                raise EncoderError(
                    f"encoder failed for {rung.label}",
                    exit_code=process.returncode,
                    stderr=stderr,
                )

            await self._deliver(output_dir, delivered, on_segment, include_last=True)
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
            if not drain.done():
                drain.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await drain

        playlist_path = output_dir / PLAYLIST_NAME
        if not playlist_path.exists():
            raise EncoderError(f"encoder produced no playlist for {rung.label}")
        segment_names, duration = parse_playlist(playlist_path.read_text())
        log.info(
            "encode_rung_complete",
            rung=rung.label,
            segments=len(segment_names),
            duration_seconds=round(duration, 3),
        )
        return RungResult(
            rung=rung,
            playlist_path=playlist_path,
            segment_names=segment_names,
            duration_seconds=duration,
        )

    async def _deliver(
        self,
        output_dir: Path,
        delivered: set[str],
        on_segment: SegmentCallback,
        include_last: bool,
    ) -> None:
        segments = sorted(p for p in output_dir.glob(SEGMENT_GLOB) if p.name not in delivered)
        if not include_last and segments:
            segments = segments[:-1]
        for segment in segments:
            delivered.add(segment.name)
            await on_segment(segment)

    @staticmethod
    async def _drain(process: asyncio.subprocess.Process, tail: deque[str]) -> None:
        if process.stderr is None:
            return
        async for raw in process.stderr:
            tail.append(raw.decode(errors="replace").rstrip())

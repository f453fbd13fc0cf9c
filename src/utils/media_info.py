"""Media file information utilities using FFprobe."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from src.config import get_settings
from src.exceptions import RenderError, RenderTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class StreamInfo:
    """One stream of a media file."""

    index: int
    codec_type: str
    codec_name: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    fps: Optional[float] = None
    sample_rate: Optional[int] = None
    channels: Optional[int] = None


@dataclass
class VideoMetadata:
    """Probed media file information."""

    duration_ms: Optional[int] = None
    format_name: Optional[str] = None
    streams: list[StreamInfo] = field(default_factory=list)

    @property
    def video_stream(self) -> Optional[StreamInfo]:
        return next((s for s in self.streams if s.codec_type == "video"), None)

    @property
    def has_video(self) -> bool:
        return self.video_stream is not None

    @property
    def has_audio(self) -> bool:
        return any(s.codec_type == "audio" for s in self.streams)

    @property
    def dimensions(self) -> tuple[int, int]:
        """(width, height) of the primary video stream.

        Raises:
            RenderError: If there is no video stream or it has no size
        """
        stream = self.video_stream
        if stream is None:
            raise RenderError("No video stream found")
        if not stream.width or not stream.height:
            raise RenderError("Video dimensions not found")
        return stream.width, stream.height


def _parse_fps(rate: str | None) -> Optional[float]:
    if not rate or "/" not in rate:
        return None
    num, den = rate.split("/", 1)
    try:
        if int(den) > 0:
            return round(int(num) / int(den), 3)
    except ValueError:
        pass
    return None


def parse_ffprobe_output(data: dict[str, Any]) -> VideoMetadata:
    """Build VideoMetadata from ``ffprobe -show_format -show_streams`` JSON."""
    format_info = data.get("format", {})
    duration_ms = None
    if "duration" in format_info:
        try:
            duration_ms = int(float(format_info["duration"]) * 1000)
        except (TypeError, ValueError):
            duration_ms = None

    streams = []
    for stream in data.get("streams", []):
        codec_type = stream.get("codec_type")
        info = StreamInfo(
            index=stream.get("index", len(streams)),
            codec_type=codec_type or "unknown",
            codec_name=stream.get("codec_name"),
        )
        if codec_type == "video":
            info.width = stream.get("width")
            info.height = stream.get("height")
            info.fps = _parse_fps(stream.get("r_frame_rate"))
        elif codec_type == "audio":
            info.sample_rate = int(stream.get("sample_rate", 0)) or None
            info.channels = stream.get("channels")
        streams.append(info)

    return VideoMetadata(
        duration_ms=duration_ms,
        format_name=format_info.get("format_name"),
        streams=streams,
    )


async def _run_ffprobe(
    file_path: str,
    *args: str,
    ffprobe_path: str | None = None,
    timeout_s: float | None = None,
) -> dict:
    """Run ffprobe and return parsed JSON."""
    settings = get_settings()
    cmd = [
        ffprobe_path or settings.ffprobe_path,
        "-v", "error",
        "-print_format", "json",
        *args,
        file_path,
    ]
    timeout = timeout_s if timeout_s is not None else settings.probe_timeout_s

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise RenderError("Could not start ffprobe", diagnostics=str(e)) from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise RenderTimeoutError(f"Probing timed out after {timeout:.0f}s")

    if proc.returncode != 0:
        diagnostics = stderr.decode("utf-8", errors="replace")
        logger.error(f"[PROBE] ffprobe failed for {file_path}: {diagnostics}")
        raise RenderError("Could not read video file", diagnostics=diagnostics)

    try:
        return json.loads(stdout)
    except json.JSONDecodeError as e:
        raise RenderError("Could not read video file", diagnostics=f"Bad ffprobe output: {e}")


async def probe_media(
    file_path: str,
    *,
    ffprobe_path: str | None = None,
    timeout_s: float | None = None,
) -> VideoMetadata:
    """
    Get stream and format information for a media file.

    Args:
        file_path: Path to media file
        ffprobe_path: Override for the ffprobe binary
        timeout_s: Wall-clock limit for the probe

    Returns:
        VideoMetadata with all streams

    Raises:
        RenderError: If ffprobe fails or its output cannot be parsed
    """
    data = await _run_ffprobe(
        file_path,
        "-show_format",
        "-show_streams",
        ffprobe_path=ffprobe_path,
        timeout_s=timeout_s,
    )
    return parse_ffprobe_output(data)


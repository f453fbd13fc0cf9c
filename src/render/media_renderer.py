"""
FFmpeg wrapper for the multi-format render pipeline.

Operations:
1. Concatenate scene clips into one master video (re-encoded to H.264)
2. Render one output format: crop -> scale -> logo overlay -> AAC mux
3. Probe media metadata
4. Extract a preview thumbnail

Every FFmpeg call runs as an asyncio subprocess with a wall-clock timeout,
so a stalled encode never blocks the event loop or hangs a batch.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Callable, Optional

from PIL import Image, UnidentifiedImageError

from src.config import Settings, get_settings
from src.exceptions import RenderError, RenderTimeoutError
from src.render.geometry import calculate_crop, calculate_logo_position, parse_format
from src.render.types import EncodeSettings, LogoOverlay
from src.utils.media_info import VideoMetadata, probe_media

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]

# Keep the last part of FFmpeg's stderr; the useful error is at the end
MAX_DIAGNOSTICS_CHARS = 4000


class MediaRenderer:
    """Runs FFmpeg/FFprobe for concatenation, per-format renders and probes."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.ffmpeg_path = self.settings.ffmpeg_path
        self.ffprobe_path = self.settings.ffprobe_path
        self.timeout_s = self.settings.render_timeout_s

    # ========================================================================
    # Command builders (pure, used by the async operations and by tests)
    # ========================================================================

    def build_concat_command(
        self,
        list_path: str,
        output_path: str,
        encode: EncodeSettings,
    ) -> list[str]:
        """Build FFmpeg command that joins the clips listed in ``list_path``."""
        return [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-loglevel", "error",
            "-f", "concat",
            "-safe", "0",
            "-i", list_path,
            "-map", "0:v:0",
            "-map", "0:a?",
            "-c:v", "libx264",
            "-preset", encode.preset,
            "-crf", str(encode.crf),
            "-pix_fmt", encode.pixel_format,
            "-c:a", "copy",
            "-threads", str(encode.threads),
            output_path,
        ]

    def build_format_command(
        self,
        master_path: str,
        logo: LogoOverlay,
        target_size: tuple[int, int],
        source_size: tuple[int, int],
        output_path: str,
        encode: EncodeSettings,
    ) -> list[str]:
        """Build FFmpeg command for one output format.

        Args:
            master_path: Concatenated master video
            logo: Downloaded logo with its placement
            target_size: (width, height) of the output format
            source_size: (width, height) of the master video
            output_path: Where to write the MP4
            encode: Encoder options

        Returns:
            FFmpeg command as list[str]
        """
        width, height = target_size
        crop = calculate_crop(source_size[0], source_size[1], width, height)
        logo_x, logo_y = calculate_logo_position(
            logo.position, (logo.width, logo.height), (width, height), logo.padding
        )

        filter_complex = ";".join([
            f"[0:v]{crop.to_filter()}[cropped]",
            f"[cropped]scale={width}:{height}:flags=lanczos[scaled]",
            f"[1:v]scale={logo.width}:{logo.height}[logo]",
            f"[scaled][logo]overlay={logo_x}:{logo_y}:format=auto[out]",
        ])

        return [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-loglevel", "error",
            "-i", master_path,
            "-i", logo.path,
            "-filter_complex", filter_complex,
            "-map", "[out]",
            "-map", "0:a?",  # Include audio if present
            "-c:v", "libx264",
            "-preset", encode.preset,
            "-crf", str(encode.crf),
            "-pix_fmt", encode.pixel_format,
            "-c:a", "aac",
            "-b:a", encode.audio_bitrate,
            "-threads", str(encode.threads),
            "-movflags", "+faststart",
            output_path,
        ]

    def build_thumbnail_command(
        self,
        video_path: str,
        output_path: str,
        at_seconds: float,
        size: str,
    ) -> list[str]:
        width, height = parse_format(size)
        return [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-loglevel", "error",
            "-ss", f"{max(0.0, at_seconds):.3f}",
            "-i", video_path,
            "-frames:v", "1",
            "-vf", f"scale={width}:{height}:force_original_aspect_ratio=decrease",
            "-q:v", "2",
            output_path,
        ]

    # ========================================================================
    # Operations
    # ========================================================================

    async def probe(self, video_path: str) -> VideoMetadata:
        """Probe a media file; raises RenderError if it cannot be parsed."""
        return await probe_media(
            video_path,
            ffprobe_path=self.ffprobe_path,
            timeout_s=self.settings.probe_timeout_s,
        )

    async def concatenate(
        self,
        input_paths: list[str],
        output_path: str,
        *,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> str:
        """Join clips in the given order into one H.264 video.

        Clips are re-encoded so the join is frame-accurate whatever their
        original encoding; audio streams are copied when present.
        """
        if not input_paths:
            raise RenderError("No clips to concatenate")

        list_path = str(Path(output_path).with_suffix(".txt"))
        with open(list_path, "w") as f:
            for clip_path in input_paths:
                # FFmpeg concat requires escaped paths
                escaped = os.path.abspath(clip_path).replace("'", "'\\''")
                f.write(f"file '{escaped}'\n")

        total_ms = 0
        if progress_callback is not None:
            for clip_path in input_paths:
                metadata = await self.probe(clip_path)
                total_ms += metadata.duration_ms or 0

        cmd = self.build_concat_command(
            list_path, output_path, EncodeSettings.for_concat(self.settings)
        )
        logger.info(f"[MEDIA] Concatenating {len(input_paths)} clips -> {output_path}")

        try:
            await self._run_ffmpeg(
                cmd,
                label="master",
                output_path=output_path,
                duration_ms=total_ms or None,
                progress_callback=progress_callback,
            )
        finally:
            Path(list_path).unlink(missing_ok=True)

        logger.info(f"[MEDIA] Concatenation successful: {output_path}")
        return output_path

    async def render_format(
        self,
        master_path: str,
        format_str: str,
        logo: LogoOverlay,
        output_path: str,
        *,
        encode: Optional[EncodeSettings] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> str:
        """Render one output format from the master video.

        The master is probed for its true dimensions; nothing assumes a
        fixed source size.

        Raises:
            ConfigurationError: If ``format_str`` is malformed
            RenderError: On probe or encode failure (output file removed)
        """
        target_size = parse_format(format_str)

        try:
            metadata = await self.probe(master_path)
            source_size = metadata.dimensions
        except RenderTimeoutError:
            raise
        except RenderError as e:
            raise RenderError(
                f"Rendering {format_str} failed: {e.message}",
                format=format_str,
                diagnostics=e.diagnostics,
            ) from e

        logger.info(
            f"[MEDIA] Rendering {format_str} from {source_size[0]}x{source_size[1]} master"
        )
        cmd = self.build_format_command(
            master_path,
            logo,
            target_size,
            source_size,
            output_path,
            encode or EncodeSettings.for_format(self.settings),
        )
        await self._run_ffmpeg(
            cmd,
            label=format_str,
            output_path=output_path,
            duration_ms=metadata.duration_ms,
            progress_callback=progress_callback,
        )
        return output_path

    async def thumbnail(
        self,
        video_path: str,
        output_path: str,
        at_seconds: float = 0.0,
    ) -> str:
        """Extract a single preview frame at ``at_seconds``."""
        cmd = self.build_thumbnail_command(
            video_path, output_path, at_seconds, self.settings.thumbnail_size
        )
        await self._run_ffmpeg(
            cmd,
            label="thumbnail",
            output_path=output_path,
            timeout_s=self.settings.probe_timeout_s,
        )
        return output_path

    async def normalize_logo(self, source_path: str, output_path: str) -> str:
        """Re-save the logo as an RGBA PNG so FFmpeg always gets a clean image."""

        def _convert() -> None:
            with Image.open(source_path) as image:
                image.load()
                image.convert("RGBA").save(output_path, format="PNG")

        try:
            await asyncio.to_thread(_convert)
        except (UnidentifiedImageError, OSError) as e:
            Path(output_path).unlink(missing_ok=True)
            raise RenderError("Logo image could not be read", diagnostics=str(e)) from e
        return output_path

    # ========================================================================
    # Subprocess execution
    # ========================================================================

    async def _run_ffmpeg(
        self,
        cmd: list[str],
        *,
        label: str,
        output_path: str,
        duration_ms: Optional[int] = None,
        progress_callback: Optional[ProgressCallback] = None,
        timeout_s: Optional[float] = None,
    ) -> None:
        """Run FFmpeg, reporting progress and enforcing the timeout.

        On any failure the (partial) output file is deleted.
        """
        timeout = timeout_s if timeout_s is not None else self.timeout_s

        # Insert -progress pipe:1 before output_path to get progress on stdout
        cmd_with_progress = cmd[:-1] + ["-progress", "pipe:1", "-nostats", cmd[-1]]

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd_with_progress,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise RenderError(
                f"Rendering {label} failed: could not start ffmpeg",
                format=label,
                diagnostics=str(e),
            ) from e

        async def read_progress() -> None:
            last_reported_pct = -1
            async for raw_line in proc.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if line.startswith("out_time_us=") and duration_ms and progress_callback:
                    try:
                        time_s = int(line.split("=", 1)[1]) / 1_000_000
                    except ValueError:
                        continue
                    pct = max(0, min(99, int(time_s * 1000 / duration_ms * 100)))
                    if pct >= last_reported_pct + 5:  # Report every ~5%
                        last_reported_pct = pct
                        progress_callback(pct, f"Rendering {label} ({pct}%)")

        try:
            _, stderr_output, _ = await asyncio.wait_for(
                asyncio.gather(read_progress(), proc.stderr.read(), proc.wait()),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"[MEDIA] FFmpeg timed out after {timeout:.0f}s ({label})")
            proc.kill()
            await proc.wait()
            Path(output_path).unlink(missing_ok=True)
            raise RenderTimeoutError(
                f"Rendering {label} timed out after {timeout:.0f}s", format=label
            )
        except BaseException:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            Path(output_path).unlink(missing_ok=True)
            raise

        if proc.returncode != 0:
            diagnostics = stderr_output.decode("utf-8", errors="replace")[-MAX_DIAGNOSTICS_CHARS:]
            logger.error(f"[MEDIA] FFmpeg failed ({label}, exit {proc.returncode}): {diagnostics}")
            Path(output_path).unlink(missing_ok=True)
            raise RenderError(
                f"Rendering {label} failed (ffmpeg exit code {proc.returncode})",
                format=label,
                diagnostics=diagnostics,
            )

        if not os.path.exists(output_path) or os.path.getsize(output_path) == 0:
            Path(output_path).unlink(missing_ok=True)
            raise RenderError(f"Rendering {label} produced no output", format=label)

        if progress_callback:
            progress_callback(100, f"Rendered {label}")

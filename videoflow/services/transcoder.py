import asyncio
import json
import shutil
import tempfile
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from pathlib import Path

import structlog

from videoflow.core.errors import NotConfiguredError, UpstreamError
from videoflow.models import TargetProfile
from videoflow.services.storage import StorageService

logger = structlog.get_logger()

ProgressCallback = Callable[[int], Awaitable[None]]
DoneCallback = Callable[[str | None, str | None], Awaitable[None]]

# Signed source URLs only need to outlive the ffmpeg/ffprobe read
SOURCE_URL_TTL_SECONDS = 6 * 3600


class FFmpegError(Exception):
    """Exception raised when FFmpeg or ffprobe fails."""
    pass


@dataclass(frozen=True)
class VideoInfo:
    duration: float | None = None
    width: int | None = None
    height: int | None = None
    format: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def output_key_for(source_key: str, profile: TargetProfile) -> str:
    """``videos/{owner}/{job}/input.mp4`` -> ``transcoded/{owner}/{job}/{profile}.mp4``."""
    parent = source_key.rsplit("/", 1)[0] if "/" in source_key else ""
    if parent.startswith("videos/"):
        parent = "transcoded/" + parent[len("videos/"):]
    elif parent:
        parent = f"transcoded/{parent}"
    else:
        parent = "transcoded"
    return f"{parent}/{profile.value}.mp4"


def parse_probe_output(raw: str) -> VideoInfo:
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise FFmpegError(f"ffprobe returned invalid JSON: {e}") from e

    fmt = data.get("format", {})
    video_stream = next(
        (s for s in data.get("streams", []) if s.get("codec_type") == "video"),
        None,
    )
    if video_stream is None:
        raise FFmpegError("No video stream found")

    duration = fmt.get("duration")
    try:
        duration = float(duration) if duration is not None else None
    except (TypeError, ValueError):
        duration = None

    return VideoInfo(
        duration=duration,
        width=video_stream.get("width"),
        height=video_stream.get("height"),
        format=fmt.get("format_name"),
    )


def parse_progress_line(line: str, duration: float) -> int | None:
    """Percent complete from one ``-progress`` line, or None if it carries none."""
    if line == "progress=end":
        return 100
    if not line.startswith("out_time_ms=") or duration <= 0:
        return None
    try:
        # Despite the name, ffmpeg reports microseconds here
        current_seconds = int(line.split("=", 1)[1]) / 1_000_000
    except (ValueError, IndexError):
        return None
    return max(0, min(100, int(current_seconds / duration * 100)))


class FFmpegEngine:
    """Transcoding engine backed by the ffmpeg and ffprobe binaries.

    The source is read straight from the object store through a signed URL;
    the output is written to a temporary directory and uploaded when ffmpeg
    exits cleanly.
    """

    def __init__(
        self,
        storage: StorageService,
        ffmpeg_binary: str = "ffmpeg",
        ffprobe_binary: str = "ffprobe",
        probe_timeout: float = 30,
    ) -> None:
        self.storage = storage
        self.ffmpeg_binary = ffmpeg_binary
        self.ffprobe_binary = ffprobe_binary
        self.probe_timeout = probe_timeout

    @property
    def is_available(self) -> bool:
        return shutil.which(self.ffmpeg_binary) is not None and shutil.which(self.ffprobe_binary) is not None

    def ensure_available(self) -> None:
        if not self.is_available:
            raise NotConfiguredError("Transcoding engine", f"'{self.ffmpeg_binary}' and '{self.ffprobe_binary}' must be on PATH.")

    def build_command(self, input_url: str, output_path: str, profile: TargetProfile) -> list[str]:
        return [
            self.ffmpeg_binary, "-y",
            "-i", input_url,
            "-c:v", "libx264",
            "-c:a", "aac",
            "-s", profile.size,
            "-b:v", profile.video_bitrate,
            "-progress", "pipe:1",
            "-nostats",
            "-loglevel", "error",
            output_path,
        ]

    async def probe(self, source_key: str) -> VideoInfo:
        """Duration, dimensions and container of an uploaded object."""
        try:
            return await self._probe(source_key)
        except (FFmpegError, OSError) as e:
            logger.warning("probe_failed", key=source_key, error=str(e))
            raise UpstreamError("Transcoding engine", f"probe failed: {e}") from e

    async def _probe(self, source_key: str) -> VideoInfo:
        url = await self.storage.get_signed_url(source_key, SOURCE_URL_TTL_SECONDS)
        cmd = [
            self.ffprobe_binary, "-v", "quiet",
            "-print_format", "json",
            "-show_format", "-show_streams",
            url,
        ]

        process = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.probe_timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise FFmpegError(f"ffprobe timeout after {self.probe_timeout}s") from e

        if process.returncode != 0:
            raise FFmpegError(f"ffprobe failed: {stderr.decode('utf-8', errors='ignore')[:500]}")

        info = parse_probe_output(stdout.decode("utf-8", errors="ignore"))
        logger.info("ffprobe_completed", key=source_key, duration=info.duration, format=info.format)
        return info

    async def run(
        self,
        source_key: str,
        output_key: str,
        profile: TargetProfile,
        on_progress: ProgressCallback,
        on_done: DoneCallback,
        duration: float | None = None,
    ) -> None:
        """Transcode ``source_key`` into ``output_key``.

        ``duration`` scales progress; the source is probed only when it is
        unknown. Always finishes by calling ``on_done`` exactly once, either
        with the output key or with an error message.
        """
        try:
            if duration is None:
                duration = (await self.probe(source_key)).duration
            input_url = await self.storage.get_signed_url(source_key, SOURCE_URL_TTL_SECONDS)

            with tempfile.TemporaryDirectory(prefix="videoflow-") as temp_dir:
                output_path = str(Path(temp_dir) / "output.mp4")
                cmd = self.build_command(input_url, output_path, profile)

                logger.info("ffmpeg_started", key=source_key, profile=profile.value)
                await self._run_ffmpeg(cmd, duration or 0.0, on_progress)
                logger.info("ffmpeg_completed", key=source_key, profile=profile.value)

                await self.storage.upload_file(output_path, output_key, "video/mp4")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("engine_run_failed", key=source_key, profile=profile.value, error=str(e))
            await on_done(None, str(e))
            return

        await on_done(output_key, None)

    async def _run_ffmpeg(self, cmd: list[str], duration: float, on_progress: ProgressCallback) -> None:
        process = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
        last_reported = -1

        async def read_progress() -> None:
            nonlocal last_reported
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                percent = parse_progress_line(line.decode("utf-8", errors="ignore").strip(), duration)
                if percent is not None and percent > last_reported:
                    last_reported = percent
                    await on_progress(percent)

        try:
            # stderr is drained alongside stdout so a chatty ffmpeg cannot block on a full pipe
            _, stderr = await asyncio.gather(read_progress(), process.stderr.read())
            await process.wait()
        finally:
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="ignore")[:500]
            logger.error("ffmpeg_failed", returncode=process.returncode, stderr=message)
            raise FFmpegError(f"FFmpeg failed: {message}")

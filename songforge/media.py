"""
Media processing on encoded audio bytes.

Each operation writes its inputs into a private temporary directory, runs
ffmpeg/ffprobe with an argument list (never through a shell) and reads the
result back. The directory is removed whatever happens to the subprocess.
"""

import asyncio
import logging
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import List, Optional, Tuple

import aiofiles

from .errors import ProcessingError, ToolUnavailable, ValidationError

logger = logging.getLogger(__name__)

FFMPEG_INSTALL_HINT = (
    "ffmpeg/ffprobe not found. Audio mixing and post-processing require ffmpeg. "
    "Install it with your package manager (e.g. apt install ffmpeg, brew install ffmpeg) "
    "or set FFMPEG_PATH / FFPROBE_PATH."
)

MIX_FORMATS = ("mp3", "wav")

CODECS = {
    "mp3": "libmp3lame",
    "wav": "pcm_s16le",
    "ogg": "libvorbis",
    "flac": "flac",
}

LOSSY_FORMATS = ("mp3", "ogg")


def reverb_params(amount: float) -> Tuple[int, float]:
    """Linear mapping of reverb amount (0..1) to an aecho delay (ms) and decay"""
    if not 0.0 <= amount <= 1.0:
        raise ValidationError(f"Reverb amount must be between 0 and 1, got {amount}")
    delay_ms = max(1, round(amount * 100))
    decay = amount
    return delay_ms, decay


class MediaProcessor:
    """Stateless wrapper around the ffmpeg command-line tools"""

    def __init__(self, ffmpeg: str = "ffmpeg", ffprobe: str = "ffprobe", bitrate: str = "192k"):
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.bitrate = bitrate
        self._resolved: Optional[Tuple[str, str]] = None

    def check_available(self) -> Tuple[str, str]:
        """Resolve both executables, raising ToolUnavailable if either is missing"""
        if self._resolved is not None:
            return self._resolved

        ffmpeg = shutil.which(self.ffmpeg)
        ffprobe = shutil.which(self.ffprobe)
        missing = [name for name, path in ((self.ffmpeg, ffmpeg), (self.ffprobe, ffprobe)) if not path]
        if missing:
            raise ToolUnavailable(f"{', '.join(missing)}: {FFMPEG_INSTALL_HINT}")

        self._resolved = (ffmpeg, ffprobe)
        logger.info("[Media] Using ffmpeg=%s ffprobe=%s", ffmpeg, ffprobe)
        return self._resolved

    @property
    def available(self) -> bool:
        try:
            self.check_available()
            return True
        except ToolUnavailable:
            return False

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def mix(
        self,
        track_a: bytes,
        track_b: bytes,
        volume_a: float = 1.0,
        volume_b: float = 1.0,
        output_format: str = "mp3",
    ) -> bytes:
        """Blend two tracks; the result lasts as long as the longer input"""
        if output_format not in MIX_FORMATS:
            raise ValidationError(f"Unsupported mix format: {output_format}")
        if volume_a < 0 or volume_b < 0:
            raise ValidationError("Track volumes must be non-negative")

        with self._workspace() as workdir:
            path_a = await self._write(workdir, "track_a", track_a)
            path_b = await self._write(workdir, "track_b", track_b)
            output = workdir / f"mixed.{output_format}"

            filter_graph = (
                f"[0:a]volume={volume_a}[a];"
                f"[1:a]volume={volume_b}[b];"
                "[a][b]amix=inputs=2:duration=longest:dropout_transition=2:normalize=0[out]"
            )
            args = [
                "-i", str(path_a),
                "-i", str(path_b),
                "-filter_complex", filter_graph,
                "-map", "[out]",
                *self._codec_args(output_format, self.bitrate),
                str(output),
            ]
            await self._run_ffmpeg(args)
            return await self._read(output)

    async def adjust_volume(self, audio: bytes, factor: float, output_format: str = "mp3") -> bytes:
        if factor < 0:
            raise ValidationError(f"Volume factor must be non-negative, got {factor}")
        return await self._filter(audio, f"volume={factor}", output_format)

    async def add_reverb(self, audio: bytes, amount: float = 0.3, output_format: str = "mp3") -> bytes:
        delay_ms, decay = reverb_params(amount)
        return await self._filter(audio, f"aecho=0.8:0.9:{delay_ms}:{decay}", output_format)

    async def probe_duration(self, audio: bytes) -> float:
        """Duration of the encoded audio in seconds"""
        _, ffprobe = self.check_available()
        with self._workspace() as workdir:
            path = await self._write(workdir, "input", audio)
            cmd = [
                ffprobe,
                "-v", "error",
                "-show_entries", "format=duration",
                "-of", "default=noprint_wrappers=1:nokey=1",
                str(path),
            ]
            stdout = await self._exec("ffprobe", cmd)

        text = stdout.decode("utf-8", errors="replace").strip()
        try:
            return float(text.splitlines()[0])
        except (ValueError, IndexError):
            raise ProcessingError("ffprobe", 0, f"Unparseable duration output: {text!r}")

    async def transcode(self, audio: bytes, target_format: str, bitrate: str = "192k") -> bytes:
        if target_format not in CODECS:
            raise ValidationError(f"Unsupported target format: {target_format}")

        with self._workspace() as workdir:
            path = await self._write(workdir, "input", audio)
            output = workdir / f"output.{target_format}"
            args = ["-i", str(path), *self._codec_args(target_format, bitrate), str(output)]
            await self._run_ffmpeg(args)
            return await self._read(output)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _filter(self, audio: bytes, audio_filter: str, output_format: str) -> bytes:
        if output_format not in CODECS:
            raise ValidationError(f"Unsupported output format: {output_format}")

        with self._workspace() as workdir:
            path = await self._write(workdir, "input", audio)
            output = workdir / f"output.{output_format}"
            args = [
                "-i", str(path),
                "-af", audio_filter,
                *self._codec_args(output_format, self.bitrate),
                str(output),
            ]
            await self._run_ffmpeg(args)
            return await self._read(output)

    @staticmethod
    def _codec_args(fmt: str, bitrate: str) -> List[str]:
        args = ["-c:a", CODECS[fmt]]
        if fmt in LOSSY_FORMATS:
            args += ["-b:a", bitrate]
        return args

    @staticmethod
    def _workspace() -> "_Workspace":
        # Unique per invocation so concurrent runs never share paths
        return _Workspace(prefix=f"songforge-{uuid.uuid4().hex}-")

    @staticmethod
    async def _write(workdir: Path, name: str, data: bytes) -> Path:
        if not data:
            raise ValidationError(f"Empty audio input for {name}")
        path = workdir / name
        async with aiofiles.open(path, "wb") as f:
            await f.write(data)
        return path

    @staticmethod
    async def _read(path: Path) -> bytes:
        async with aiofiles.open(path, "rb") as f:
            return await f.read()

    async def _run_ffmpeg(self, args: List[str]) -> bytes:
        ffmpeg, _ = self.check_available()
        cmd = [ffmpeg, "-y", "-hide_banner", "-loglevel", "error", *args]
        return await self._exec("ffmpeg", cmd)

    @staticmethod
    async def _exec(tool: str, cmd: List[str]) -> bytes:
        logger.debug("[Media] Running %s", cmd)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ToolUnavailable(f"{tool}: {FFMPEG_INSTALL_HINT}") from e

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        if process.returncode != 0:
            stderr_text = stderr.decode("utf-8", errors="replace")
            logger.error("[Media] %s failed (code %s): %s", tool, process.returncode, stderr_text[-500:])
            raise ProcessingError(tool, process.returncode, stderr_text)
        return stdout


class _Workspace(tempfile.TemporaryDirectory):
    """TemporaryDirectory that yields a Path instead of a str"""

    def __enter__(self) -> Path:
        return Path(self.name)

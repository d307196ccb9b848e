"""Error taxonomy for the generation pipeline and its collaborators."""

from typing import Optional


class SongForgeError(Exception):
    """Base class; ``http_status`` is what the API layer answers with."""

    http_status = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(SongForgeError):
    http_status = 400


class VoiceNotReady(SongForgeError):
    http_status = 400


class InsufficientCredits(SongForgeError):
    http_status = 402


class NotFound(SongForgeError):
    http_status = 404


class InvalidTransition(SongForgeError):
    http_status = 409


class VendorError(SongForgeError):
    """Non-2xx answer from a vendor API."""

    http_status = 502

    def __init__(self, vendor: str, status_code: int, message: str):
        super().__init__(f"{vendor} API error: {status_code} - {message}")
        self.vendor = vendor
        self.status_code = status_code
        self.vendor_message = message


class GenerationFailed(SongForgeError):
    http_status = 502

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason or "Unknown error"
        super().__init__(f"Song generation failed: {self.reason}")


class ConversionFailed(SongForgeError):
    http_status = 502

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason or "Unknown error"
        super().__init__(f"Voice conversion failed: {self.reason}")


class PollTimeout(SongForgeError, TimeoutError):
    http_status = 504


class ProcessingError(SongForgeError):
    """ffmpeg/ffprobe exited non-zero."""

    http_status = 500

    def __init__(self, tool: str, returncode: int, stderr: str):
        tail = stderr.strip()[-1000:]
        super().__init__(f"{tool} exited with code {returncode}: {tail}")
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr


class ToolUnavailable(SongForgeError):
    http_status = 503

"""
Where finished songs live.

LocalArtifactStore writes files that the API serves under /outputs.
DataUrlArtifactStore embeds the audio in the URL itself, which is only
sensible for small deployments.
"""

import base64
import logging
from pathlib import Path
from typing import Protocol

import aiofiles

from .errors import ValidationError

logger = logging.getLogger(__name__)

MIME_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
    "flac": "audio/flac",
}


class ArtifactStore(Protocol):
    async def save(self, key: str, data: bytes, fmt: str = "mp3") -> str:
        ...

    async def delete(self, url: str) -> None:
        ...


class LocalArtifactStore:
    def __init__(self, output_dir: Path, url_prefix: str = "/outputs"):
        self.output_dir = Path(output_dir)
        self.url_prefix = url_prefix.rstrip("/")

    def ensure_dir(self) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, url: str) -> Path:
        if not url.startswith(self.url_prefix + "/"):
            raise ValidationError(f"Not a local artifact URL: {url}")
        name = url[len(self.url_prefix) + 1:]
        if "/" in name or name in ("", ".", ".."):
            raise ValidationError(f"Not a local artifact URL: {url}")
        return self.output_dir / name

    async def save(self, key: str, data: bytes, fmt: str = "mp3") -> str:
        self.ensure_dir()
        filename = f"{key}.{fmt}"
        async with aiofiles.open(self.output_dir / filename, "wb") as f:
            await f.write(data)
        logger.info("[Storage] Saved %s (%d bytes)", filename, len(data))
        return f"{self.url_prefix}/{filename}"

    async def delete(self, url: str) -> None:
        path = self.path_for(url)
        if path.exists():
            path.unlink()
            logger.info("[Storage] Deleted %s", path.name)


class DataUrlArtifactStore:
    async def save(self, key: str, data: bytes, fmt: str = "mp3") -> str:
        mime = MIME_TYPES.get(fmt, "application/octet-stream")
        return f"data:{mime};base64,{base64.b64encode(data).decode('utf-8')}"

    async def delete(self, url: str) -> None:
        # Nothing outside the row to remove
        return None


def build_artifact_store(kind: str, output_dir: Path) -> ArtifactStore:
    if kind == "data_url":
        return DataUrlArtifactStore()
    if kind == "local":
        return LocalArtifactStore(output_dir)
    raise ValidationError(f"Unknown artifact store: {kind}")

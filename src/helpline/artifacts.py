"""
Artifact store for synthesized audio.

Files live in a local directory that the web app serves under /audio, which
gives Twilio a fetchable URL for <Play>.
"""

import asyncio
import re
from pathlib import Path
from typing import Any, Optional, Protocol

import structlog

from src.helpline.config import get_config
from src.helpline.errors import ArtifactStoreError

logger = structlog.get_logger(__name__)

_VALID_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class ArtifactStore(Protocol):
    async def save(self, artifact_id: str, data: bytes) -> str: ...

    async def delete(self, artifact_id: str) -> None: ...


class LocalArtifactStore:
    """Writes artifacts to `directory` and publishes them under `base_url`."""

    def __init__(
        self,
        directory: Optional[str] = None,
        base_url: Optional[str] = None,
        extension: str = ".wav",
        config: Optional[Any] = None,
    ):
        if directory is None or base_url is None:
            config = config or get_config()
        self.directory = Path(directory or config.artifact_dir)
        self.base_url = (base_url or config.audio_base_url).rstrip("/")
        self.extension = extension

    def _path(self, artifact_id: str) -> Path:
        if not _VALID_ID.match(artifact_id or ""):
            raise ArtifactStoreError(f"Invalid artifact id: {artifact_id!r}")
        return self.directory / f"{artifact_id}{self.extension}"

    def url_for(self, artifact_id: str) -> str:
        return f"{self.base_url}/{artifact_id}{self.extension}"

    async def save(self, artifact_id: str, data: bytes) -> str:
        path = self._path(artifact_id)

        def _write() -> None:
            self.directory.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise ArtifactStoreError(f"Failed to write artifact {artifact_id}: {e}") from e

        logger.debug("Artifact stored", artifact_id=artifact_id, size=len(data))
        return self.url_for(artifact_id)

    async def delete(self, artifact_id: str) -> None:
        path = self._path(artifact_id)
        await asyncio.to_thread(path.unlink, missing_ok=True)
        logger.debug("Artifact deleted", artifact_id=artifact_id)

    def resolve(self, filename: str) -> Optional[Path]:
        """Map a published file name back to a stored file, or None."""
        if not filename.endswith(self.extension):
            return None
        try:
            path = self._path(filename[: -len(self.extension)])
        except ArtifactStoreError:
            return None
        return path if path.is_file() else None

"""
File management service for avatarpipe.

Handles per-session artifact storage with path traversal protection.
Creates per-session directories with subdirectories for audio, images
and downloaded videos.
"""
import asyncio
import logging
from pathlib import Path

import httpx

from avatarpipe.config import settings
from avatarpipe.errors import ProviderRejection, TransientNetworkError

logger = logging.getLogger(__name__)


class FileManager:
    """
    Manage filesystem artifacts for avatar pipeline sessions.

    Creates structured directories:
    - {base_dir}/{session_id}/audio/ - Synthesized speech
    - {base_dir}/{session_id}/images/ - Local copies of source images
    - {base_dir}/{session_id}/videos/ - Downloaded rendered videos

    Implements path traversal protection to prevent directory escape attacks.
    """

    def __init__(self, base_dir: str | Path | None = None):
        """
        Initialize FileManager with base directory.

        Args:
            base_dir: Root directory for all session artifacts.
                     If None, uses settings.storage.tmp_dir
        """
        if base_dir is None:
            base_dir = settings.storage.tmp_dir

        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def get_session_dir(self, session_id: str) -> Path:
        """
        Get or create session directory with subdirectories.

        Raises:
            ValueError: If session_id creates path outside base_dir (traversal attack)
        """
        session_dir = (self.base_dir / str(session_id)).resolve()

        if not session_dir.is_relative_to(self.base_dir) or session_dir == self.base_dir:
            raise ValueError("Invalid session path")

        session_dir.mkdir(exist_ok=True)
        (session_dir / "audio").mkdir(exist_ok=True)
        (session_dir / "images").mkdir(exist_ok=True)
        (session_dir / "videos").mkdir(exist_ok=True)

        return session_dir

    def audio_path(self, session_id: str, name: str) -> Path:
        return self.get_session_dir(session_id) / "audio" / f"{name}.mp3"

    def video_path(self, session_id: str, name: str) -> Path:
        return self.get_session_dir(session_id) / "videos" / f"{name}.mp4"

    def image_path(self, session_id: str, name: str) -> Path:
        return self.get_session_dir(session_id) / "images" / f"{name}.jpg"

    async def download_video(self, session_id: str, name: str, url: str) -> Path:
        """
        Fetch a rendered video into the session's videos directory.

        Streams to a temporary file and renames it, so a partial download
        never leaves a truncated video behind.

        Raises:
            TransientNetworkError: Network failure or 5xx while downloading
            ProviderRejection: The URL answered with a 4xx
        """
        return await self._download(url, self.video_path(session_id, name), "Video")

    async def download_image(self, session_id: str, name: str, url: str) -> Path:
        """Fetch a generated image into the session's images directory."""
        return await self._download(url, self.image_path(session_id, name), "Image")

    async def _download(self, url: str, filepath: Path, label: str) -> Path:
        partial = filepath.with_suffix(".part")
        logger.info(f"Downloading {url} -> {filepath}")

        try:
            async with httpx.AsyncClient(follow_redirects=True, timeout=httpx.Timeout(300.0, connect=30.0)) as client:
                async with client.stream("GET", url) as response:
                    if response.status_code >= 500:
                        raise TransientNetworkError(f"{label} download failed: HTTP {response.status_code}")
                    if response.status_code >= 400:
                        raise ProviderRejection(
                            f"{label} download failed: HTTP {response.status_code}",
                            status_code=response.status_code,
                        )
                    with open(partial, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            f.write(chunk)
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{label} download failed: {e}") from e

        await asyncio.to_thread(partial.replace, filepath)
        logger.info(f"Downloaded {filepath.stat().st_size} bytes to {filepath}")
        return filepath

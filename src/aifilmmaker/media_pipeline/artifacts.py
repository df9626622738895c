from __future__ import annotations

import asyncio
import logging
import re
import time
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import requests

from aifilmmaker.errors import DownloadFailed
from aifilmmaker.project.model import Artifact, LocalArtifact, RemoteReference
from aifilmmaker.providers.base import VideoJob

logger = logging.getLogger(__name__)

PROVIDER_HOST = "generativelanguage.googleapis.com"
MIN_ARTIFACT_BYTES = 1000


def artifact_filename(prefix: str, source_text: str, ext: str = "", timestamp: Optional[int] = None) -> str:
    """``<prefix>_<slug of the first 30 chars>_<ms timestamp>[.<ext>]``."""
    slug = re.sub(r"[^a-z0-9]", "_", (source_text or "")[:30], flags=re.IGNORECASE).lower()
    stamp = timestamp if timestamp is not None else int(time.time() * 1000)
    name = f"{prefix}_{slug}_{stamp}"
    ext = ext.lstrip(".")
    return f"{name}.{ext}" if ext else name


def resolve_download_url(uri: str, api_key: str | None, proxy_base: str | None = None) -> str:
    """Attach the media and key parameters provider-hosted URIs need."""
    parsed = urlparse(uri)
    if parsed.hostname != PROVIDER_HOST or not api_key:
        return uri
    if proxy_base:
        query = urlencode({"alt": "media", "key": api_key})
        return f"{proxy_base.rstrip('/')}{parsed.path}?{query}"
    params = dict(parse_qsl(parsed.query))
    params.update({"alt": "media", "key": api_key})
    return urlunparse(parsed._replace(query=urlencode(params)))


class ArtifactFetcher:
    """Moves finished provider media onto local disk.

    A failed download is not fatal: the caller receives a RemoteReference to
    the provider URI instead of a LocalArtifact.
    """

    def __init__(
        self,
        asset_dir: Path,
        api_key: str | None = None,
        proxy_base: str | None = None,
        min_bytes: int = MIN_ARTIFACT_BYTES,
        timeout: float = 120.0,
        session: requests.Session | None = None,
    ) -> None:
        self.asset_dir = Path(asset_dir)
        self.api_key = api_key
        self.proxy_base = proxy_base
        self.min_bytes = min_bytes
        self.timeout = timeout
        self.session = session or requests.Session()

    async def fetch(self, job: VideoJob, name: str) -> Artifact:
        target = self.asset_dir / f"{name}.mp4"
        if job.inline_videos:
            return await asyncio.to_thread(self._write, job.inline_videos[0], target)

        uri = job.video_uris[0]
        scheme = urlparse(uri).scheme
        if scheme not in ("http", "https"):
            logger.warning("Cannot download %s (scheme %r); keeping remote reference", uri, scheme)
            return RemoteReference(uri=uri, reason=f"unsupported scheme {scheme!r}")

        url = resolve_download_url(uri, self.api_key, self.proxy_base)
        try:
            return await asyncio.to_thread(self._download, url, target)
        except (requests.RequestException, DownloadFailed, OSError) as exc:
            logger.warning("Download of %s failed (%s); falling back to remote reference", name, exc)
            return RemoteReference(uri=uri, reason=str(exc))

    def _download(self, url: str, target: Path) -> LocalArtifact:
        response = self.session.get(url, stream=True, timeout=self.timeout)
        response.raise_for_status()
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(f"{target.name}.part")
        received = 0
        try:
            with partial.open("wb") as handle:
                for chunk in response.iter_content(chunk_size=8192):
                    if chunk:
                        handle.write(chunk)
                        received += len(chunk)
            self._check_size(received)
            partial.replace(target)
        finally:
            partial.unlink(missing_ok=True)
        logger.info("Downloaded %d bytes to %s", received, target)
        return LocalArtifact(path=target, size_bytes=received)

    def _check_size(self, size: int) -> None:
        if size < self.min_bytes:
            raise DownloadFailed(
                f"Downloaded video is too small ({size} bytes); the provider returned no usable media."
            )

    def _write(self, data: bytes, target: Path) -> LocalArtifact:
        self._check_size(len(data))
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.info("Saved %d bytes to %s", len(data), target)
        return LocalArtifact(path=target, size_bytes=len(data))

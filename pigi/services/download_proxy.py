"""
Authenticated download proxy.

Clients only ever see /simple/{project}/{filename}; the GitHub asset URL and
the token stay on the server-to-GitHub leg.
"""
from __future__ import annotations

import logging
import re
from typing import AsyncIterator, Dict, Optional
from urllib.parse import quote

import httpx

from pigi.domain.errors import (
    CacheRefreshError,
    UpstreamError,
    UpstreamErrorKind,
    UpstreamFailureError,
)
from pigi.domain.models import PackageFile, TrackedRepository
from pigi.services.github_client import GitHubClient
from pigi.services.release_cache import ReleaseCache
from pigi.services.simple_index import SimpleIndex

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
# Upstream headers that are safe and useful to pass on.
_FORWARDED_HEADERS = ("content-length", "last-modified", "etag")
_UNSAFE_FILENAME_CHARS = re.compile(r'[^A-Za-z0-9._+~-]')


def content_disposition(filename: str) -> str:
    """
    RFC 6266 attachment header: a plain ASCII fallback name plus the exact
    name percent-encoded in `filename*`.
    """
    fallback = _UNSAFE_FILENAME_CHARS.sub("_", filename)
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


class AssetStream:
    """
    An open upstream download. Iterate `iter_bytes()` exactly once; the
    upstream response is closed when iteration ends or is abandoned.
    """

    def __init__(self, package_file: PackageFile, response: httpx.Response):
        self.package_file = package_file
        self._response = response

    @property
    def filename(self) -> str:
        return self.package_file.original_filename

    @property
    def headers(self) -> Dict[str, str]:
        headers = {
            name: self._response.headers[name]
            for name in _FORWARDED_HEADERS
            if name in self._response.headers
        }
        if "content-encoding" in self._response.headers:
            # aiter_bytes() yields decoded bytes, so the upstream length is wrong.
            headers.pop("content-length", None)
        headers["content-disposition"] = content_disposition(self.filename)
        return headers

    @property
    def is_closed(self) -> bool:
        return self._response.is_closed

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes(CHUNK_SIZE):
                yield chunk
        finally:
            await self._response.aclose()

    async def aclose(self) -> None:
        await self._response.aclose()


class DownloadProxy:
    def __init__(self, index: SimpleIndex, cache: ReleaseCache, client: GitHubClient):
        self.index = index
        self.cache = cache
        self.client = client

    def _repository_for(self, package_file: PackageFile) -> Optional[TrackedRepository]:
        for repo in self.cache.repositories:
            if repo.key == package_file.repository_key:
                return repo
        return None

    async def resolve_and_stream(self, project_name: str, filename: str) -> AssetStream:
        """
        Find the file in the index and open its upstream download.

        Raises ProjectNotFoundError / FileNotFoundInIndexError for unknown
        files and UpstreamFailureError when GitHub does not deliver it.
        """
        package_file = await self.index.resolve_file(project_name, filename)
        try:
            response = await self.client.open_asset(package_file.download_url, filename)
        except UpstreamError as e:
            if e.kind is not UpstreamErrorKind.NOT_FOUND:
                logger.error(f"Download of {filename} failed: {e}")
                raise UpstreamFailureError(filename, e) from e
            logger.info(f"Asset {filename} went away upstream, refreshing {package_file.repository_key}")
            package_file, response = await self._retry_with_refresh(package_file, project_name, filename)

        logger.debug(f"Streaming {filename} from {package_file.repository_key} release {package_file.release_tag}")
        return AssetStream(package_file, response)

    async def _retry_with_refresh(self, stale: PackageFile, project_name: str, filename: str):
        repo = self._repository_for(stale)
        if repo is not None:
            self.cache.invalidate(repo)
        try:
            package_file = await self.index.resolve_file(project_name, filename)
        except CacheRefreshError as e:
            raise UpstreamFailureError(filename, e.cause) from e

        try:
            response = await self.client.open_asset(package_file.download_url, filename)
        except UpstreamError as e:
            logger.error(f"Download of {filename} failed after refreshing the listing: {e}")
            raise UpstreamFailureError(filename, e) from e
        return package_file, response

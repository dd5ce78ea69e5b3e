"""
GitHub Releases API client.

Collects every asset of every published release of a repository, following
pagination, and opens authenticated asset downloads. Rate limiting is
reported, never retried here: backoff is the release cache's job.
"""
from __future__ import annotations

import logging
import time
from typing import Dict, List, Optional, Set

import httpx
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from pigi import __version__
from pigi.domain.errors import UpstreamError, UpstreamErrorKind
from pigi.domain.models import ReleaseAsset, ReleaseListing, TrackedRepository

logger = logging.getLogger(__name__)

GITHUB_API_VERSION = "2022-11-28"
PAGE_SIZE = 100
DEFAULT_RATE_LIMIT_WAIT = 60.0


class GitHubAsset(BaseModel):
    name: str
    url: str
    size: int = 0
    state: str = "uploaded"
    digest: Optional[str] = None


class GitHubRelease(BaseModel):
    tag_name: str
    draft: bool = False
    prerelease: bool = False
    assets: List[GitHubAsset] = Field(default_factory=list)


_RELEASES_ADAPTER = TypeAdapter(List[GitHubRelease])


def _rate_limit_wait(response: httpx.Response) -> Optional[float]:
    """
    Seconds until GitHub accepts requests again, or None when the response
    is not a rate-limit response.
    """
    retry_after = response.headers.get("retry-after")
    if retry_after:
        try:
            return max(0.0, float(retry_after))
        except ValueError:
            return DEFAULT_RATE_LIMIT_WAIT

    if response.headers.get("x-ratelimit-remaining") == "0":
        reset = response.headers.get("x-ratelimit-reset")
        if reset:
            try:
                return max(0.0, float(reset) - time.time())
            except ValueError:
                pass
        return DEFAULT_RATE_LIMIT_WAIT

    if response.status_code == 429:
        return DEFAULT_RATE_LIMIT_WAIT
    return None


def _error_for_status(response: httpx.Response, what: str) -> UpstreamError:
    status = response.status_code
    if status in (403, 429):
        wait = _rate_limit_wait(response)
        if wait is not None:
            return UpstreamError(
                UpstreamErrorKind.RATE_LIMITED,
                f"GitHub rate limit exceeded while fetching {what}",
                status_code=status,
                retry_after=wait,
            )
        return UpstreamError(UpstreamErrorKind.UNAUTHORIZED, f"Access to {what} denied", status_code=status)
    if status == 401:
        return UpstreamError(UpstreamErrorKind.UNAUTHORIZED, f"GitHub rejected credentials for {what}", status_code=status)
    if status in (404, 410):
        return UpstreamError(UpstreamErrorKind.NOT_FOUND, f"{what} not found", status_code=status)
    return UpstreamError(UpstreamErrorKind.NETWORK, f"Unexpected GitHub response for {what}", status_code=status)


class GitHubClient:
    """
    Thin async wrapper around the GitHub REST API.

    The token is attached only to requests sent to the configured API host.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self._api_host = httpx.URL(self.api_url).host
        self._token = token
        self._client = httpx.AsyncClient(
            headers={
                "User-Agent": f"pigi/{__version__}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": GITHUB_API_VERSION,
            },
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _auth_headers(self, url: str) -> Dict[str, str]:
        if self._token and httpx.URL(url).host == self._api_host:
            return {"Authorization": f"Bearer {self._token}"}
        return {}

    def releases_url(self, repo: TrackedRepository) -> str:
        return f"{self.api_url}/repos/{repo.owner}/{repo.repo}/releases"

    # ========================================================================
    # Release listing
    # ========================================================================

    async def _get(self, url: str, what: str, headers: Optional[Dict[str, str]] = None, params=None) -> httpx.Response:
        request_headers = self._auth_headers(url)
        if headers:
            request_headers.update(headers)
        try:
            return await self._client.get(url, headers=request_headers, params=params)
        except httpx.TimeoutException as e:
            raise UpstreamError(UpstreamErrorKind.NETWORK, f"Timed out fetching {what}") from e
        except httpx.DecodingError as e:
            raise UpstreamError(UpstreamErrorKind.MALFORMED, f"Undecodable response body for {what}") from e
        except httpx.RequestError as e:
            raise UpstreamError(UpstreamErrorKind.NETWORK, f"Request error fetching {what}: {type(e).__name__}") from e

    def _parse_releases(self, response: httpx.Response, what: str) -> List[GitHubRelease]:
        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError(UpstreamErrorKind.MALFORMED, f"Response for {what} is not JSON") from e
        try:
            return _RELEASES_ADAPTER.validate_python(data)
        except ValidationError as e:
            raise UpstreamError(
                UpstreamErrorKind.MALFORMED,
                f"Unexpected release payload for {what} ({e.error_count()} validation errors)",
            ) from e

    async def fetch_releases(self, repo: TrackedRepository, etag: Optional[str] = None) -> ReleaseListing:
        """
        Fetch the assets of all published releases of `repo`.

        When `etag` is given the first page is requested conditionally and
        an unchanged repository yields `not_modified=True` without assets.
        """
        what = f"releases of {repo.key}"
        url: Optional[str] = self.releases_url(repo)
        params: Optional[Dict[str, int]] = {"per_page": PAGE_SIZE}
        headers = {"If-None-Match": etag} if etag else None

        assets: List[ReleaseAsset] = []
        first_etag: Optional[str] = None
        visited: Set[str] = set()
        page = 0

        while url:
            page += 1
            logger.debug(f"Fetching {what}, page {page}")
            response = await self._get(url, what, headers=headers, params=params)

            if page == 1 and response.status_code == 304:
                logger.debug(f"{what} not modified since last fetch")
                return ReleaseListing(etag=etag, not_modified=True)
            if response.status_code != 200:
                raise _error_for_status(response, what)
            if page == 1:
                first_etag = response.headers.get("etag")

            for release in self._parse_releases(response, what):
                if release.draft:
                    continue
                for asset in release.assets:
                    if asset.state != "uploaded":
                        continue
                    assets.append(
                        ReleaseAsset(
                            filename=asset.name,
                            download_url=asset.url,
                            size=asset.size,
                            release_tag=release.tag_name,
                            digest=asset.digest,
                            prerelease=release.prerelease,
                        )
                    )

            visited.add(str(response.url))
            next_link = response.links.get("next")
            url = next_link.get("url") if next_link else None
            if url and url in visited:
                raise UpstreamError(UpstreamErrorKind.MALFORMED, f"Pagination loop while fetching {what}")
            # The "next" URL already carries the query string.
            params = None
            headers = None

        logger.info(f"Fetched {len(assets)} release assets for {repo.key} ({page} page(s))")
        return ReleaseListing(assets=assets, etag=first_etag)

    # ========================================================================
    # Asset download
    # ========================================================================

    async def open_asset(self, download_url: str, filename: str) -> httpx.Response:
        """
        Start a streamed download of a release asset.

        The caller owns the returned response and must close it. GitHub
        answers with a redirect to short-lived storage; httpx drops the
        Authorization header when the redirect leaves the API host.
        """
        headers = self._auth_headers(download_url)
        headers["Accept"] = "application/octet-stream"
        request = self._client.build_request("GET", download_url, headers=headers)
        try:
            response = await self._client.send(request, stream=True, follow_redirects=True)
        except httpx.TimeoutException as e:
            raise UpstreamError(UpstreamErrorKind.NETWORK, f"Timed out downloading {filename}") from e
        except httpx.DecodingError as e:
            raise UpstreamError(UpstreamErrorKind.MALFORMED, f"Undecodable response for {filename}") from e
        except httpx.RequestError as e:
            raise UpstreamError(UpstreamErrorKind.NETWORK, f"Request error downloading {filename}: {type(e).__name__}") from e

        if response.status_code >= 400:
            await response.aclose()
            raise _error_for_status(response, filename)
        return response

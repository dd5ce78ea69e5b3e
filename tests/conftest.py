"""Pytest configuration and fixtures for pigi tests."""

import hashlib
import json
from typing import Callable, Dict, List, Optional

import httpx
import pytest

from pigi.core.config import Settings
from pigi.domain.models import TrackedRepository

API_URL = "https://api.github.com"
STORAGE_HOST = "objects.githubusercontent.com"
TOKEN = "ghp_test_secret_token"


class FakeGitHub:
    """
    In-memory stand-in for the GitHub Releases API, served through
    httpx.MockTransport.

    Release listings are paginated like the real API (Link: rel="next"),
    carry an ETag, and asset downloads redirect to a storage host.
    """

    def __init__(self, page_size: int = 100):
        self.page_size = page_size
        self.releases: Dict[str, List[dict]] = {}
        self.contents: Dict[int, bytes] = {}
        self.listing_overrides: Dict[str, Callable[[], httpx.Response]] = {}
        self.asset_overrides: Dict[int, Callable[[], httpx.Response]] = {}
        self.requests: List[httpx.Request] = []
        self._next_asset_id = 1

    # -- setup -------------------------------------------------------------

    def add_repository(self, key: str) -> None:
        self.releases.setdefault(key, [])

    def add_release(
        self,
        key: str,
        tag: str,
        asset_names: List[str],
        prerelease: bool = False,
        draft: bool = False,
        with_digest: bool = True,
    ) -> Dict[str, int]:
        """Add a release (newest first) and return {asset name: asset id}."""
        assets = []
        ids = {}
        for name in asset_names:
            asset_id = self._next_asset_id
            self._next_asset_id += 1
            content = f"content of {name}".encode()
            self.contents[asset_id] = content
            asset = {
                "id": asset_id,
                "name": name,
                "url": f"{API_URL}/repos/{key}/releases/assets/{asset_id}",
                "browser_download_url": f"https://github.com/{key}/releases/download/{tag}/{name}",
                "size": len(content),
                "state": "uploaded",
            }
            if with_digest:
                asset["digest"] = "sha256:" + hashlib.sha256(content).hexdigest()
            assets.append(asset)
            ids[name] = asset_id
        self.releases.setdefault(key, []).insert(
            0, {"tag_name": tag, "draft": draft, "prerelease": prerelease, "assets": assets}
        )
        return ids

    # -- inspection ----------------------------------------------------------

    def listing_requests(self, key: Optional[str] = None) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if r.url.path.endswith("/releases") and (key is None or r.url.path == f"/repos/{key}/releases")
        ]

    # -- transport -----------------------------------------------------------

    def _etag(self, key: str) -> str:
        digest = hashlib.sha1(json.dumps(self.releases[key], sort_keys=True).encode()).hexdigest()
        return f'"{digest}"'

    def _list_releases(self, request: httpx.Request, key: str) -> httpx.Response:
        if key in self.listing_overrides:
            return self.listing_overrides[key]()
        if key not in self.releases:
            return httpx.Response(404, json={"message": "Not Found"})

        etag = self._etag(key)
        if request.headers.get("if-none-match") == etag:
            return httpx.Response(304, headers={"etag": etag})

        page = int(request.url.params.get("page", "1"))
        per_page = min(int(request.url.params.get("per_page", "30")), self.page_size)
        releases = self.releases[key]
        chunk = releases[(page - 1) * per_page: page * per_page]

        headers = {"etag": etag}
        if page * per_page < len(releases):
            headers["link"] = f'<{API_URL}/repos/{key}/releases?per_page={per_page}&page={page + 1}>; rel="next"'
        return httpx.Response(200, json=chunk, headers=headers)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.url.host == STORAGE_HOST:
            asset_id = int(path.rsplit("/", 1)[-1])
            return httpx.Response(200, content=self.contents[asset_id])

        parts = path.strip("/").split("/")
        # /repos/{owner}/{repo}/releases
        if len(parts) == 4 and parts[0] == "repos" and parts[3] == "releases":
            return self._list_releases(request, f"{parts[1]}/{parts[2]}")
        # /repos/{owner}/{repo}/releases/assets/{id}
        if len(parts) == 6 and parts[3] == "releases" and parts[4] == "assets":
            asset_id = int(parts[5])
            if asset_id in self.asset_overrides:
                return self.asset_overrides[asset_id]()
            if asset_id not in self.contents:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(302, headers={"location": f"https://{STORAGE_HOST}/assets/{asset_id}"})
        return httpx.Response(404, json={"message": "Not Found"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def acme_tool() -> TrackedRepository:
    return TrackedRepository(owner="acme", repo="tool", display_name="Acme Tool")


@pytest.fixture
def settings() -> Settings:
    return Settings(github_token=TOKEN, cache_ttl_seconds=300, failure_backoff_seconds=30)

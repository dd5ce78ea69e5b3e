"""Tests for the Simple Repository view over the cache."""

import httpx
import pytest

from pigi.domain.errors import (
    CacheRefreshError,
    FileNotFoundInIndexError,
    ProjectNotFoundError,
    UpstreamErrorKind,
)
from pigi.domain.models import TrackedRepository
from pigi.services.github_client import GitHubClient
from pigi.services.release_cache import ReleaseCache
from pigi.services.simple_index import SimpleIndex, unique_versions
from tests.conftest import API_URL, TOKEN, FakeGitHub

TOOL = TrackedRepository(owner="acme", repo="tool")
FORK = TrackedRepository(owner="fork", repo="tool")


class IndexHarness:
    def __init__(self, fake: FakeGitHub, repos):
        self.client = GitHubClient(token=TOKEN, api_url=API_URL, transport=fake.transport)
        self.cache = ReleaseCache(self.client, repos)
        self.index = SimpleIndex(self.cache)

    async def aclose(self):
        await self.cache.close()
        await self.client.aclose()


@pytest.fixture
def populated():
    fake = FakeGitHub()
    fake.add_release("acme/tool", "v1.0", ["acme_tool-1.0.tar.gz", "acme_tool-1.0-py3-none-any.whl"])
    fake.add_release("acme/tool", "v1.10", ["acme_tool-1.10.tar.gz"])
    fake.add_release("acme/tool", "v1.2", ["acme_tool-1.2.tar.gz", "checksums.txt"])
    fake.add_release("acme/tool", "cli-v0.3", ["acme_cli-0.3-py3-none-any.whl"])
    return fake


class TestProjectList:
    @pytest.mark.asyncio
    async def test_lists_normalized_names_sorted(self, populated):
        harness = IndexHarness(populated, [TOOL])
        try:
            links = await harness.index.render_project_list()
        finally:
            await harness.aclose()

        assert [link.name for link in links] == ["acme-cli", "acme-tool"]
        assert links[1].url == "/simple/acme-tool/"

    @pytest.mark.asyncio
    async def test_missing_repository_contributes_nothing(self, populated):
        harness = IndexHarness(populated, [TOOL, TrackedRepository(owner="acme", repo="deleted")])
        try:
            links = await harness.index.render_project_list()
        finally:
            await harness.aclose()

        assert [link.name for link in links] == ["acme-cli", "acme-tool"]

    @pytest.mark.asyncio
    async def test_unreadable_repository_fails_the_listing(self, populated):
        populated.listing_overrides["fork/tool"] = lambda: httpx.Response(
            403, headers={"x-ratelimit-remaining": "0", "retry-after": "30"}
        )
        harness = IndexHarness(populated, [TOOL, FORK])
        try:
            with pytest.raises(CacheRefreshError) as exc:
                await harness.index.render_project_list()
        finally:
            await harness.aclose()

        assert exc.value.kind is UpstreamErrorKind.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_empty_when_no_assets_match(self):
        fake = FakeGitHub()
        fake.add_release("acme/tool", "v1.0", ["README.md", "tool-linux-amd64"])
        harness = IndexHarness(fake, [TOOL])
        try:
            links = await harness.index.render_project_list()
        finally:
            await harness.aclose()

        assert links == []


class TestProjectFiles:
    @pytest.mark.asyncio
    async def test_files_in_version_order(self, populated):
        harness = IndexHarness(populated, [TOOL])
        try:
            links = await harness.index.render_project_files("acme-tool")
        finally:
            await harness.aclose()

        assert [link.filename for link in links] == [
            "acme_tool-1.0-py3-none-any.whl",
            "acme_tool-1.0.tar.gz",
            "acme_tool-1.2.tar.gz",
            "acme_tool-1.10.tar.gz",
        ]
        assert unique_versions(links) == ["1.0", "1.2", "1.10"]

    @pytest.mark.asyncio
    async def test_links_point_at_this_server(self, populated):
        harness = IndexHarness(populated, [TOOL])
        try:
            links = await harness.index.render_project_files("acme-tool")
        finally:
            await harness.aclose()

        link = links[1]
        assert link.url == "/simple/acme-tool/acme_tool-1.0.tar.gz"
        assert link.href.startswith("/simple/acme-tool/acme_tool-1.0.tar.gz#sha256=")
        assert len(link.hashes["sha256"]) == 64
        for link in links:
            assert "github" not in link.url

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["Acme_Tool", "ACME.TOOL", "acme--tool", "acme-tool"])
    async def test_name_variants_resolve_to_same_project(self, populated, name):
        harness = IndexHarness(populated, [TOOL])
        try:
            links = await harness.index.render_project_files(name)
        finally:
            await harness.aclose()

        assert len(links) == 4
        assert all(link.url.startswith("/simple/acme-tool/") for link in links)

    @pytest.mark.asyncio
    async def test_unknown_project(self, populated):
        harness = IndexHarness(populated, [TOOL])
        try:
            with pytest.raises(ProjectNotFoundError):
                await harness.index.render_project_files("does-not-exist")
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_merges_repositories_first_configured_wins(self, populated):
        populated.add_release("fork/tool", "v1.0", ["acme_tool-1.0.tar.gz"])
        populated.add_release("fork/tool", "v3.0", ["acme_tool-3.0.tar.gz"])
        harness = IndexHarness(populated, [TOOL, FORK])
        try:
            files = await harness.index.find_files("acme-tool")
        finally:
            await harness.aclose()

        by_name = {f.original_filename: f for f in files}
        assert by_name["acme_tool-1.0.tar.gz"].repository_key == "acme/tool"
        assert by_name["acme_tool-3.0.tar.gz"].repository_key == "fork/tool"
        assert len(files) == 5

    @pytest.mark.asyncio
    async def test_project_found_despite_other_repository_failing(self, populated):
        populated.listing_overrides["fork/tool"] = lambda: httpx.Response(500)
        harness = IndexHarness(populated, [TOOL, FORK])
        try:
            links = await harness.index.render_project_files("acme-cli")
        finally:
            await harness.aclose()

        assert [link.filename for link in links] == ["acme_cli-0.3-py3-none-any.whl"]

    @pytest.mark.asyncio
    async def test_missing_project_with_failing_repository_reports_failure(self, populated):
        populated.listing_overrides["fork/tool"] = lambda: httpx.Response(500)
        harness = IndexHarness(populated, [TOOL, FORK])
        try:
            with pytest.raises(CacheRefreshError) as exc:
                await harness.index.render_project_files("fork-only")
        finally:
            await harness.aclose()

        assert exc.value.kind is UpstreamErrorKind.NETWORK


class TestResolveFile:
    @pytest.mark.asyncio
    async def test_resolves_package_file(self, populated):
        harness = IndexHarness(populated, [TOOL])
        try:
            package_file = await harness.index.resolve_file("Acme.Tool", "acme_tool-1.2.tar.gz")
        finally:
            await harness.aclose()

        assert package_file.version == "1.2"
        assert package_file.release_tag == "v1.2"
        assert package_file.download_url.startswith(f"{API_URL}/repos/acme/tool/releases/assets/")

    @pytest.mark.asyncio
    async def test_unknown_filename(self, populated):
        harness = IndexHarness(populated, [TOOL])
        try:
            with pytest.raises(FileNotFoundInIndexError):
                await harness.index.resolve_file("acme-tool", "acme_tool-9.9.tar.gz")
        finally:
            await harness.aclose()

"""
Simple Repository view over the release cache.

Groups the files of all tracked repositories by normalized project name.
When several repositories produce the same project name their files are
merged into one listing; for identical filenames the repository listed first
in the configuration wins.
"""
from __future__ import annotations

import logging
from typing import Dict, List
from urllib.parse import quote

from pigi.domain.errors import (
    CacheRefreshError,
    FileNotFoundInIndexError,
    ProjectNotFoundError,
    UpstreamErrorKind,
)
from pigi.domain.filenames import normalize_project_name, version_key
from pigi.domain.models import FileLink, PackageFile, ProjectLink
from pigi.services.release_cache import ReleaseCache

logger = logging.getLogger(__name__)


def _blocking_failures(failures: List[CacheRefreshError]) -> List[CacheRefreshError]:
    # A repository that does not exist on GitHub simply contributes nothing.
    return [f for f in failures if f.kind is not UpstreamErrorKind.NOT_FOUND]


class SimpleIndex:
    def __init__(self, cache: ReleaseCache, base_path: str = "/simple"):
        self.cache = cache
        self.base_path = base_path.rstrip("/")

    def project_url(self, project_name: str) -> str:
        return f"{self.base_path}/{project_name}/"

    def file_url(self, project_name: str, filename: str) -> str:
        return f"{self.base_path}/{project_name}/{quote(filename)}"

    async def _collect(self):
        indexes = []
        failures: List[CacheRefreshError] = []
        for repo, result in await self.cache.get_many():
            if isinstance(result, CacheRefreshError):
                if result.kind is UpstreamErrorKind.NOT_FOUND:
                    logger.warning(f"Tracked repository {repo.key} does not exist or is not accessible")
                failures.append(result)
            else:
                indexes.append(result)
        return indexes, failures

    async def render_project_list(self) -> List[ProjectLink]:
        """
        All project names provided by the tracked repositories, sorted.

        Raises CacheRefreshError when a repository could not be read at all,
        rather than answering with a partial list.
        """
        indexes, failures = await self._collect()
        blocking = _blocking_failures(failures)
        if blocking:
            raise blocking[0]

        names = set()
        for index in indexes:
            names.update(index.project_names())
        return [ProjectLink(name=name, url=self.project_url(name)) for name in sorted(names)]

    async def find_files(self, project_name: str) -> List[PackageFile]:
        """
        Files of one project across all repositories, in version order.
        """
        normalized = normalize_project_name(project_name)
        indexes, failures = await self._collect()

        by_filename: Dict[str, PackageFile] = {}
        for index in indexes:
            for package_file in index.files_for(normalized):
                existing = by_filename.get(package_file.original_filename)
                if existing is not None:
                    logger.warning(
                        f"{package_file.original_filename} is published by both {existing.repository_key} "
                        f"and {package_file.repository_key}; using {existing.repository_key}"
                    )
                    continue
                by_filename[package_file.original_filename] = package_file

        if not by_filename:
            blocking = _blocking_failures(failures)
            if blocking:
                # The project may live in a repository we could not read.
                raise blocking[0]
            raise ProjectNotFoundError(normalized)

        return sorted(by_filename.values(), key=lambda f: (version_key(f.version), f.original_filename))

    async def render_project_files(self, project_name: str) -> List[FileLink]:
        normalized = normalize_project_name(project_name)
        links = []
        for package_file in await self.find_files(normalized):
            hashes = {"sha256": package_file.sha256} if package_file.sha256 else {}
            links.append(
                FileLink(
                    filename=package_file.original_filename,
                    url=self.file_url(normalized, package_file.original_filename),
                    version=package_file.version,
                    size=package_file.size,
                    hashes=hashes,
                )
            )
        return links

    async def resolve_file(self, project_name: str, filename: str) -> PackageFile:
        for package_file in await self.find_files(project_name):
            if package_file.original_filename == filename:
                return package_file
        raise FileNotFoundInIndexError(normalize_project_name(project_name), filename)


def unique_versions(links: List[FileLink]) -> List[str]:
    """Versions in listing order, each once (PEP 700 `versions` key)."""
    return list(dict.fromkeys(link.version for link in links))

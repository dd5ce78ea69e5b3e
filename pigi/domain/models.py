from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class TrackedRepository(BaseModel):
    """
    One GitHub repository whose release assets are exposed by this index.
    Loaded once at startup from the repository configuration file.
    """

    model_config = ConfigDict(frozen=True)

    owner: str = Field(min_length=1)
    repo: str = Field(min_length=1)
    display_name: Optional[str] = Field(
        default=None,
        description="Human-friendly label used in logs; never used for lookups.",
    )

    @property
    def key(self) -> str:
        return f"{self.owner}/{self.repo}"

    def __str__(self) -> str:
        return self.key


class ReleaseAsset(BaseModel):
    """
    A single asset attached to a GitHub release, as returned by the API.
    Short-lived: only exists between fetching and normalization.
    """

    filename: str
    download_url: str = Field(description="GitHub API asset URL (releases/assets/{id}).")
    size: int = 0
    release_tag: str
    digest: Optional[str] = Field(
        default=None,
        description="Asset digest reported by GitHub, e.g. 'sha256:<hex>'.",
    )
    prerelease: bool = False


class FileKind(str, Enum):
    SDIST = "sdist"
    WHEEL = "wheel"
    OTHER = "other"


class PackageFile(BaseModel):
    """
    A release asset translated into a Simple Repository distribution file.
    """

    model_config = ConfigDict(frozen=True)

    project_name: str = Field(pattern=r"^[a-z0-9]+(-[a-z0-9]+)*$")
    version: str
    original_filename: str
    download_url: str
    file_kind: FileKind
    size: int = 0
    sha256: Optional[str] = None
    release_tag: str = ""
    repository_key: str = ""


class RepositoryIndex(BaseModel):
    """
    The normalized listing of one tracked repository.

    Built in one piece by a single refresh and replaced as a whole; it is
    never updated in place.
    """

    model_config = ConfigDict(frozen=True)

    repository: TrackedRepository
    files: Tuple[PackageFile, ...] = ()
    fetched_at: datetime
    etag: Optional[str] = None

    def project_names(self) -> List[str]:
        return sorted({f.project_name for f in self.files})

    def files_for(self, project_name: str) -> List[PackageFile]:
        return [f for f in self.files if f.project_name == project_name]


class ReleaseListing(BaseModel):
    """Result of one pass over a repository's releases."""

    assets: List[ReleaseAsset] = Field(default_factory=list)
    etag: Optional[str] = None
    not_modified: bool = False


# ---------------------------------------------------------------------------
# Simple Repository response models
# ---------------------------------------------------------------------------

class ProjectLink(BaseModel):
    name: str
    url: str


class FileLink(BaseModel):
    filename: str
    url: str
    version: str
    size: int = 0
    hashes: Dict[str, str] = Field(default_factory=dict)

    @property
    def href(self) -> str:
        """URL with the PEP 503 hash fragment, when a hash is known."""
        sha256 = self.hashes.get("sha256")
        if sha256:
            return f"{self.url}#sha256={sha256}"
        return self.url

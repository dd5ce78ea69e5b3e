"""
Exception hierarchy shared by every layer of the index.

Messages must stay safe to show to clients and to write to logs: they never
contain the GitHub token and never contain raw asset download URLs.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class PigiError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(PigiError):
    """The tracked-repository configuration is missing or malformed."""


class UpstreamErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    UNAUTHORIZED = "unauthorized"
    NETWORK = "network"
    MALFORMED = "malformed"


class UpstreamError(PigiError):
    """A GitHub API call failed."""

    def __init__(
        self,
        kind: UpstreamErrorKind,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.kind.value}: {self.message} (HTTP {self.status_code})"
        return f"{self.kind.value}: {self.message}"


class NormalizationErrorKind(str, Enum):
    UNSUPPORTED_EXTENSION = "unsupported_extension"
    AMBIGUOUS_VERSION = "ambiguous_version"


class NormalizationError(PigiError):
    """A release asset filename could not be mapped to a distribution file."""

    def __init__(self, kind: NormalizationErrorKind, filename: str, reason: str = ""):
        super().__init__(f"{filename}: {reason or kind.value}")
        self.kind = kind
        self.filename = filename
        self.reason = reason


class CacheRefreshError(PigiError):
    """
    Refreshing a repository failed and there is no earlier listing to fall
    back on. Wraps the underlying UpstreamError.
    """

    def __init__(self, repository_key: str, cause: UpstreamError):
        super().__init__(f"Refreshing {repository_key} failed: {cause}")
        self.repository_key = repository_key
        self.cause = cause

    @property
    def kind(self) -> UpstreamErrorKind:
        return self.cause.kind

    @property
    def retry_after(self) -> Optional[float]:
        return self.cause.retry_after


class ProjectNotFoundError(PigiError):
    """No tracked repository provides the requested project."""

    def __init__(self, project_name: str):
        super().__init__(f"Project not found: {project_name}")
        self.project_name = project_name


class FileNotFoundInIndexError(PigiError):
    """The project exists but has no file with the requested name."""

    def __init__(self, project_name: str, filename: str):
        super().__init__(f"File not found: {project_name}/{filename}")
        self.project_name = project_name
        self.filename = filename


class UpstreamFailureError(PigiError):
    """Downloading a distribution file from GitHub failed."""

    def __init__(self, filename: str, cause: Optional[UpstreamError] = None):
        super().__init__(f"Download of {filename} failed")
        self.filename = filename
        self.cause = cause

    @property
    def retry_after(self) -> Optional[float]:
        return self.cause.retry_after if self.cause is not None else None

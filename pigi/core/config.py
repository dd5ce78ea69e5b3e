"""
Runtime configuration.

Settings come from environment variables; the list of tracked repositories
comes from a JSON or YAML file whose path is given by REPOS_CONFIG_PATH.
Two file layouts are accepted:

    [{"owner": "acme", "repo": "tool", "display_name": "Acme Tool"}]

    {"acme-tool": {"owner": "acme", "name": "tool"}}

In the mapping layout the key is used as the display name.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import aiofiles
import yaml
from pydantic import BaseModel, Field, SecretStr, ValidationError

from pigi.domain.errors import ConfigurationError
from pigi.domain.models import TrackedRepository

logger = logging.getLogger(__name__)

REPOS_CONFIG_PATH_ENV_VAR = "REPOS_CONFIG_PATH"
GITHUB_TOKEN_ENV_VAR = "GITHUB_TOKEN"
DEFAULT_REPOS_CONFIG_PATH = "repos.json"
DEFAULT_GITHUB_API_URL = "https://api.github.com"


class Settings(BaseModel):
    repos_config_path: Path = Field(
        default=Path(DEFAULT_REPOS_CONFIG_PATH),
        description="File listing the tracked GitHub repositories.",
    )
    github_token: Optional[SecretStr] = Field(
        default=None,
        description="Bearer token attached to outbound GitHub requests only.",
    )
    github_api_url: str = DEFAULT_GITHUB_API_URL
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)
    cache_ttl_seconds: float = Field(
        default=300.0,
        ge=0,
        description="How long a repository listing is served without asking GitHub.",
    )
    failure_backoff_seconds: float = Field(
        default=30.0,
        ge=0,
        description="How long GitHub is left alone for a repository after a failed refresh.",
    )
    upstream_timeout_seconds: float = Field(default=30.0, gt=0)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}

        mapping = {
            REPOS_CONFIG_PATH_ENV_VAR: "repos_config_path",
            GITHUB_TOKEN_ENV_VAR: "github_token",
            "GITHUB_API_URL": "github_api_url",
            "SERVICE_HOST": "host",
            "SERVICE_PORT": "port",
            "PIGI_CACHE_TTL_SECONDS": "cache_ttl_seconds",
            "PIGI_FAILURE_BACKOFF_SECONDS": "failure_backoff_seconds",
            "PIGI_UPSTREAM_TIMEOUT_SECONDS": "upstream_timeout_seconds",
        }
        for env_name, field_name in mapping.items():
            raw = env.get(env_name)
            if raw:
                values[field_name] = raw

        try:
            return cls(**values)
        except ValidationError as e:
            # Field names only; the token value must not end up in the message.
            bad_fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise ConfigurationError(f"Invalid environment configuration: {bad_fields}") from None

    @property
    def token(self) -> Optional[str]:
        if self.github_token is None:
            return None
        return self.github_token.get_secret_value() or None


def _entry_from_mapping(display_name: str, raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Repository entry {display_name!r} must be an object")
    entry = dict(raw)
    # The original repos.json layout calls the repository "name".
    if "repo" not in entry and "name" in entry:
        entry["repo"] = entry.pop("name")
    entry.setdefault("display_name", display_name)
    return entry


def parse_tracked_repositories(data: Any) -> List[TrackedRepository]:
    """
    Validate the decoded repository configuration. Raises ConfigurationError
    rather than degrading into an empty index.
    """
    if isinstance(data, dict) and "repositories" in data:
        data = data["repositories"]

    if isinstance(data, dict):
        raw_entries = [_entry_from_mapping(str(k), v) for k, v in data.items()]
    elif isinstance(data, list):
        raw_entries = data
    else:
        raise ConfigurationError("Repository configuration must be a list or a mapping")

    if not raw_entries:
        raise ConfigurationError("Repository configuration does not list any repositories")

    repositories: List[TrackedRepository] = []
    seen = set()
    for position, raw in enumerate(raw_entries):
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Repository entry #{position} must be an object")
        try:
            repo = TrackedRepository(**raw)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid repository entry #{position}: {e}") from e

        key = repo.key.lower()
        if key in seen:
            raise ConfigurationError(f"Repository {repo.key} is listed more than once")
        seen.add(key)
        repositories.append(repo)

    return repositories


async def load_tracked_repositories(path: Path) -> List[TrackedRepository]:
    """
    Read and validate the repository configuration file.
    """
    path = Path(path).expanduser()
    if not path.is_file():
        raise ConfigurationError(f"Repository configuration file not found: {path}")

    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        content = await f.read()

    try:
        # YAML is a superset of JSON, so this handles both formats.
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse {path}: {e}") from e

    repositories = parse_tracked_repositories(data)
    logger.info(f"Loaded {len(repositories)} tracked repositories from {path}")
    return repositories

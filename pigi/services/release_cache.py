"""
In-memory cache of normalized repository listings.

Per tracked repository the cache keeps the last good RepositoryIndex and
refreshes it from GitHub once it is older than the TTL. Concurrent requests
for the same repository share one in-flight refresh task; different
repositories never wait on each other. A failed refresh keeps serving the
previous listing.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from pigi.domain.errors import CacheRefreshError, UpstreamError
from pigi.domain.filenames import normalize_release_assets
from pigi.domain.models import RepositoryIndex, TrackedRepository
from pigi.services.github_client import GitHubClient

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _FailureRecord:
    __slots__ = ("error", "not_before")

    def __init__(self, error: UpstreamError, not_before: datetime):
        self.error = error
        self.not_before = not_before


class ReleaseCache:
    """
    Owns the mapping TrackedRepository -> RepositoryIndex.

    Constructed at startup with the fixed set of tracked repositories and
    closed at shutdown.
    """

    def __init__(
        self,
        client: GitHubClient,
        repositories: Iterable[TrackedRepository],
        ttl_seconds: float = 300.0,
        failure_backoff_seconds: float = 30.0,
        clock: Clock = _utcnow,
    ):
        self.client = client
        self.ttl = timedelta(seconds=ttl_seconds)
        self.failure_backoff = timedelta(seconds=failure_backoff_seconds)
        self._clock = clock

        self._repositories: Dict[str, TrackedRepository] = {}
        self._entries: Dict[str, RepositoryIndex] = {}
        self._stale: Set[str] = set()
        self._inflight: Dict[str, asyncio.Task] = {}
        self._failures: Dict[str, _FailureRecord] = {}
        self.retain(repositories)

    # ========================================================================
    # Tracked set
    # ========================================================================

    @property
    def repositories(self) -> List[TrackedRepository]:
        return list(self._repositories.values())

    def retain(self, repositories: Iterable[TrackedRepository]) -> None:
        """
        Make `repositories` the tracked set, dropping cached data, pending
        refreshes and failure records of repositories no longer listed.
        """
        self._repositories = {repo.key: repo for repo in repositories}
        for key in list(self._entries):
            if key not in self._repositories:
                logger.info(f"Evicting cached listing of untracked repository {key}")
                del self._entries[key]
        for key in list(self._inflight):
            if key not in self._repositories:
                self._inflight.pop(key).cancel()
        for key in list(self._failures):
            if key not in self._repositories:
                del self._failures[key]
        self._stale &= set(self._repositories)

    def _tracked_key(self, repo: TrackedRepository) -> str:
        if repo.key not in self._repositories:
            raise KeyError(f"Repository {repo.key} is not tracked")
        return repo.key

    # ========================================================================
    # Lookups
    # ========================================================================

    def peek(self, repo: TrackedRepository) -> Optional[RepositoryIndex]:
        """Return the cached listing, fresh or not, without refreshing."""
        return self._entries.get(repo.key)

    def is_fresh(self, repo: TrackedRepository) -> bool:
        entry = self._entries.get(repo.key)
        if entry is None or repo.key in self._stale:
            return False
        return self._clock() - entry.fetched_at < self.ttl

    def invalidate(self, repo: TrackedRepository) -> None:
        """
        Force the next get() to go to GitHub. The current listing stays
        available as fallback data.
        """
        key = self._tracked_key(repo)
        self._stale.add(key)
        self._failures.pop(key, None)

    async def get(self, repo: TrackedRepository) -> RepositoryIndex:
        """
        Return the listing of `repo`, refreshing it first when it is missing
        or older than the TTL.

        Raises CacheRefreshError when GitHub cannot be read and there is no
        earlier listing.
        """
        key = self._tracked_key(repo)
        entry = self._entries.get(key)
        if entry is not None and self.is_fresh(repo):
            return entry

        failure = self._failures.get(key)
        if failure is not None and self._clock() < failure.not_before:
            if entry is not None:
                return entry
            raise CacheRefreshError(key, failure.error)

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._refresh(repo), name=f"refresh:{key}")
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget_task(k, t))
        # A cancelled caller must not cancel the refresh other callers wait on.
        return await asyncio.shield(task)

    async def get_many(
        self, repositories: Optional[Iterable[TrackedRepository]] = None
    ) -> List[Tuple[TrackedRepository, Union[RepositoryIndex, CacheRefreshError]]]:
        """
        get() for several repositories concurrently. Per-repository failures
        are returned in place of the index instead of being raised.
        """
        repos = list(self._repositories.values() if repositories is None else repositories)
        results = await asyncio.gather(*(self.get(repo) for repo in repos), return_exceptions=True)

        outcome = []
        for repo, result in zip(repos, results):
            if isinstance(result, BaseException) and not isinstance(result, CacheRefreshError):
                raise result
            outcome.append((repo, result))
        return outcome

    # ========================================================================
    # Refresh
    # ========================================================================

    def _forget_task(self, key: str, task: asyncio.Task) -> None:
        if not task.cancelled():
            # Marks the outcome as retrieved even if every waiter went away.
            task.exception()
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _refresh(self, repo: TrackedRepository) -> RepositoryIndex:
        key = repo.key
        previous = self._entries.get(key)
        etag = previous.etag if previous is not None else None

        try:
            listing = await self.client.fetch_releases(repo, etag=etag)
        except UpstreamError as e:
            now = self._clock()
            wait = max(e.retry_after or 0.0, self.failure_backoff.total_seconds())
            self._failures[key] = _FailureRecord(e, now + timedelta(seconds=wait))
            if previous is not None:
                logger.warning(f"Refresh of {key} failed ({e}); serving listing from {previous.fetched_at.isoformat()}")
                return previous
            logger.error(f"Refresh of {key} failed with no cached listing: {e}")
            raise CacheRefreshError(key, e) from e

        now = self._clock()
        if listing.not_modified and previous is not None:
            entry = previous.model_copy(update={"fetched_at": now})
        else:
            files = normalize_release_assets(listing.assets, repository_key=key)
            entry = RepositoryIndex(repository=repo, files=tuple(files), fetched_at=now, etag=listing.etag)
            logger.info(
                f"Indexed {len(files)} distribution files from {len(listing.assets)} assets of {key}"
            )

        if key not in self._repositories:
            # Untracked while the refresh was running.
            return entry
        self._entries[key] = entry
        self._stale.discard(key)
        self._failures.pop(key, None)
        return entry

    async def close(self) -> None:
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()

"""
Upstream access and the in-memory caching/rendering services built on top of it.

* github_client  - GitHub Releases API wrapper (pagination, auth, rate limits).
* release_cache  - per-repository TTL cache with refresh coalescing.
* simple_index   - Simple Repository project/file listings.
* download_proxy - authenticated, streamed asset downloads.
"""

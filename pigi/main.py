import logging
import os
from typing import List, Optional

import httpx
from fastapi import Depends, FastAPI

from pigi import __version__
from pigi.api.simple import router as simple_router
from pigi.core.config import Settings, load_tracked_repositories
from pigi.core.dependencies import get_release_cache
from pigi.domain.models import TrackedRepository
from pigi.services.download_proxy import DownloadProxy
from pigi.services.github_client import GitHubClient
from pigi.services.release_cache import ReleaseCache
from pigi.services.simple_index import SimpleIndex

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # httpx logs every request URL at INFO; keep it at WARNING.
    logging.getLogger("httpx").setLevel(logging.WARNING)


configure_logging(os.environ.get("PIGI_LOG_LEVEL", "INFO"))


def create_app(
    settings: Optional[Settings] = None,
    repositories: Optional[List[TrackedRepository]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the application.

    `settings` defaults to the environment; `repositories` defaults to the
    file named by settings.repos_config_path. `transport` replaces the
    network for outbound GitHub requests (used by tests).
    """
    app = FastAPI(
        title="pigi",
        version=__version__,
        description="PyPI Simple Repository API backed by GitHub Release assets.",
    )
    app.state.settings = settings

    @app.on_event("startup")
    async def startup_event() -> None:
        """
        Load configuration and build the cache and its consumers. A broken
        repository configuration aborts startup.
        """
        current = app.state.settings or Settings.from_env()
        app.state.settings = current

        tracked = repositories
        if tracked is None:
            tracked = await load_tracked_repositories(current.repos_config_path)

        client = GitHubClient(
            token=current.token,
            api_url=current.github_api_url,
            timeout=current.upstream_timeout_seconds,
            transport=transport,
        )
        cache = ReleaseCache(
            client,
            tracked,
            ttl_seconds=current.cache_ttl_seconds,
            failure_backoff_seconds=current.failure_backoff_seconds,
        )
        index = SimpleIndex(cache)

        app.state.github_client = client
        app.state.release_cache = cache
        app.state.simple_index = index
        app.state.download_proxy = DownloadProxy(index, cache, client)
        logger.info(
            f"Serving {len(tracked)} repositories "
            f"(token {'configured' if current.token else 'not configured'}, TTL {current.cache_ttl_seconds:g}s)"
        )

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        cache = getattr(app.state, "release_cache", None)
        if cache is not None:
            await cache.close()
        client = getattr(app.state, "github_client", None)
        if client is not None:
            await client.aclose()

    @app.get("/health")
    async def health(cache: ReleaseCache = Depends(get_release_cache)) -> dict:
        """
        Lightweight health check endpoint.
        """
        return {"status": "ok", "repositories": len(cache.repositories)}

    app.include_router(simple_router, tags=["simple"])
    return app


app = create_app()


if __name__ == "__main__":
    """
    Allow running `python -m pigi.main` to start the Uvicorn server.
    """
    import uvicorn

    settings = Settings.from_env()
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
    )

"""
FastAPI dependency providers.

The service objects are built once in the startup event (see pigi.main) and
stored on `app.state`; routes receive them through Depends() so tests can
construct the application around their own instances.
"""
from fastapi import Request

from pigi.services.download_proxy import DownloadProxy
from pigi.services.release_cache import ReleaseCache
from pigi.services.simple_index import SimpleIndex


def get_release_cache(request: Request) -> ReleaseCache:
    return request.app.state.release_cache


def get_simple_index(request: Request) -> SimpleIndex:
    return request.app.state.simple_index


def get_download_proxy(request: Request) -> DownloadProxy:
    return request.app.state.download_proxy

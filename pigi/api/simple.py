from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import List, Optional, Tuple, Union

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse, StreamingResponse
from fastapi.templating import Jinja2Templates
from starlette.background import BackgroundTask

from pigi.core.dependencies import get_download_proxy, get_simple_index
from pigi.domain.errors import (
    CacheRefreshError,
    FileNotFoundInIndexError,
    ProjectNotFoundError,
    UpstreamErrorKind,
    UpstreamFailureError,
)
from pigi.domain.filenames import normalize_project_name
from pigi.services.download_proxy import DownloadProxy
from pigi.services.simple_index import SimpleIndex, unique_versions

logger = logging.getLogger(__name__)
router = APIRouter()

templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent.parent / "templates"))

API_VERSION = "1.1"

TEXT_HTML = "text/html"
HTML_V1 = "application/vnd.pypi.simple.v1+html"
JSON_V1 = "application/vnd.pypi.simple.v1+json"

# Accepted media types and the media type actually served for each.
_MEDIA_TYPES = {
    TEXT_HTML: TEXT_HTML,
    "text/*": TEXT_HTML,
    "*/*": TEXT_HTML,
    HTML_V1: HTML_V1,
    "application/vnd.pypi.simple.latest+html": HTML_V1,
    JSON_V1: JSON_V1,
    "application/vnd.pypi.simple.latest+json": JSON_V1,
}
_FORMAT_ALIASES = {"html": TEXT_HTML, "json": JSON_V1}


# ---------------------------------------------------------------------------
# Content negotiation (PEP 691)
# ---------------------------------------------------------------------------

def _parse_accept(accept: str) -> List[Tuple[str, float]]:
    entries = []
    for part in accept.split(","):
        pieces = [p.strip() for p in part.split(";")]
        media_type = pieces[0].lower()
        if not media_type:
            continue
        quality = 1.0
        for param in pieces[1:]:
            key, _, value = param.partition("=")
            if key.strip().lower() == "q":
                try:
                    quality = float(value)
                except ValueError:
                    quality = 0.0
        entries.append((media_type, quality))
    return entries


def select_media_type(accept: Optional[str], format_override: Optional[str] = None) -> Optional[str]:
    """
    Pick the response media type. Returns None when nothing acceptable is
    supported (the caller answers 406).
    """
    if format_override:
        override = format_override.lower()
        return _FORMAT_ALIASES.get(override) or _MEDIA_TYPES.get(override)
    if not accept or not accept.strip():
        return TEXT_HTML

    candidates = [(m, q) for m, q in _parse_accept(accept) if q > 0 and m in _MEDIA_TYPES]
    if not candidates:
        return None
    # Stable sort keeps header order among equal qualities.
    candidates.sort(key=lambda item: item[1], reverse=True)
    return _MEDIA_TYPES[candidates[0][0]]


def _negotiate(request: Request, format_override: Optional[str]) -> str:
    media_type = select_media_type(request.headers.get("accept"), format_override)
    if media_type is None:
        raise HTTPException(
            status_code=status.HTTP_406_NOT_ACCEPTABLE,
            detail=f"Supported media types: {TEXT_HTML}, {HTML_V1}, {JSON_V1}",
        )
    return media_type


def _upstream_http_error(e: Union[CacheRefreshError, UpstreamFailureError]) -> HTTPException:
    cause = e.cause
    if cause is not None and cause.kind is UpstreamErrorKind.RATE_LIMITED:
        headers = None
        if cause.retry_after is not None:
            headers = {"Retry-After": str(max(1, math.ceil(cause.retry_after)))}
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="GitHub rate limit exceeded, try again later",
            headers=headers,
        )
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Fetching data from GitHub failed")


# ---------------------------------------------------------------------------
# 1. GET /simple/
# ---------------------------------------------------------------------------

@router.get("/simple", include_in_schema=False)
async def simple_redirect() -> RedirectResponse:
    return RedirectResponse("/simple/", status_code=status.HTTP_301_MOVED_PERMANENTLY)


@router.get("/simple/")
async def project_list(
    request: Request,
    format: Optional[str] = Query(default=None),
    index: SimpleIndex = Depends(get_simple_index),
):
    """
    Simple Repository root: every project provided by the tracked repositories.
    """
    media_type = _negotiate(request, format)
    try:
        projects = await index.render_project_list()
    except CacheRefreshError as e:
        logger.error(f"Cannot render project list: {e}")
        raise _upstream_http_error(e)

    headers = {"Vary": "Accept"}
    if media_type == JSON_V1:
        return JSONResponse(
            content={
                "meta": {"api-version": API_VERSION},
                "projects": [{"name": p.name} for p in projects],
            },
            media_type=JSON_V1,
            headers=headers,
        )
    return templates.TemplateResponse(
        request,
        "simple.html",
        {"api_version": API_VERSION, "projects": projects},
        media_type=media_type,
        headers=headers,
    )


# ---------------------------------------------------------------------------
# 2. GET /simple/{project}/
# ---------------------------------------------------------------------------

@router.get("/simple/{project}", include_in_schema=False)
async def project_redirect(project: str) -> RedirectResponse:
    return RedirectResponse(f"/simple/{project}/", status_code=status.HTTP_301_MOVED_PERMANENTLY)


@router.get("/simple/{project}/")
async def project_files(
    project: str,
    request: Request,
    format: Optional[str] = Query(default=None),
    index: SimpleIndex = Depends(get_simple_index),
):
    """
    Installable files of one project. Lookups are insensitive to case and
    to '-', '_' and '.' separators.
    """
    media_type = _negotiate(request, format)
    name = normalize_project_name(project)
    try:
        files = await index.render_project_files(name)
    except ProjectNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    except CacheRefreshError as e:
        logger.error(f"Cannot render files of {name}: {e}")
        raise _upstream_http_error(e)

    headers = {"Vary": "Accept"}
    if media_type == JSON_V1:
        return JSONResponse(
            content={
                "meta": {"api-version": API_VERSION},
                "name": name,
                "versions": unique_versions(files),
                "files": [
                    {"filename": f.filename, "url": f.url, "hashes": f.hashes, "size": f.size}
                    for f in files
                ],
            },
            media_type=JSON_V1,
            headers=headers,
        )
    return templates.TemplateResponse(
        request,
        "project.html",
        {"api_version": API_VERSION, "project": name, "files": files},
        media_type=media_type,
        headers=headers,
    )


# ---------------------------------------------------------------------------
# 3. GET /simple/{project}/{filename}
# ---------------------------------------------------------------------------

@router.get("/simple/{project}/{filename}")
async def download_file(
    project: str,
    filename: str,
    proxy: DownloadProxy = Depends(get_download_proxy),
) -> StreamingResponse:
    """
    Stream a distribution file from GitHub through this server.
    """
    try:
        stream = await proxy.resolve_and_stream(project, filename)
    except (ProjectNotFoundError, FileNotFoundInIndexError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    except (CacheRefreshError, UpstreamFailureError) as e:
        raise _upstream_http_error(e)

    return StreamingResponse(
        stream.iter_bytes(),
        media_type="application/octet-stream",
        headers=stream.headers,
        background=BackgroundTask(stream.aclose),
    )

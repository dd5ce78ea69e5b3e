"""
Distribution filename grammar.

Maps GitHub release asset names onto Simple Repository distribution files:

    acme_tool-1.2.0-py3-none-any.whl   -> (acme-tool, 1.2.0, wheel)
    acme-tool-1.2.0.tar.gz             -> (acme-tool, 1.2.0, sdist)
    acme_tool-1.2.0-py3.11.egg         -> (acme-tool, 1.2.0, other)

Everything here is pure; failures are reported as NormalizationError.
"""
from __future__ import annotations

import logging
import re
from typing import Iterable, List, NamedTuple, Optional, Set

from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version

from pigi.domain.errors import NormalizationError, NormalizationErrorKind
from pigi.domain.models import FileKind, PackageFile, ReleaseAsset

logger = logging.getLogger(__name__)

# PEP 508 project names.
_NAME_RE = re.compile(r"^([A-Z0-9]|[A-Z0-9][A-Z0-9._-]*[A-Z0-9])$", re.IGNORECASE)
_BUILD_TAG_RE = re.compile(r"^\d")
# Compatibility tags (python, abi, platform) and egg platform parts.
_TAG_RE = re.compile(r"^[A-Za-z0-9_.]+$")

WHEEL_EXTENSION = ".whl"
EGG_EXTENSION = ".egg"
# Longest first so ".tar.gz" wins over ".tar".
SDIST_EXTENSIONS = (".tar.gz", ".tar.bz2", ".tar.xz", ".tgz", ".tar", ".zip")


class ParsedFilename(NamedTuple):
    name: str
    version: str
    kind: FileKind
    extension: str


def normalize_project_name(name: str) -> str:
    """
    PEP 503 normalization: lower-case, runs of '-', '_' and '.' become '-'.
    """
    return canonicalize_name(name)


def is_valid_version(version: str) -> bool:
    try:
        Version(version)
    except InvalidVersion:
        return False
    return True


def version_key(version: str) -> tuple:
    """
    Sort key following PEP 440 precedence (1.0a1 < 1.0 < 1.0.post1).
    Unparseable versions sort before everything else.
    """
    try:
        return (1, Version(version), "")
    except InvalidVersion:
        return (0, Version("0"), version)


def _match_extension(filename: str, extensions: Iterable[str]) -> Optional[str]:
    lowered = filename.lower()
    for ext in extensions:
        if lowered.endswith(ext) and len(filename) > len(ext):
            return ext
    return None


def _parse_wheel(filename: str) -> ParsedFilename:
    stem = filename[: -len(WHEEL_EXTENSION)]
    parts = stem.split("-")
    if len(parts) not in (5, 6):
        raise NormalizationError(
            NormalizationErrorKind.UNSUPPORTED_EXTENSION,
            filename,
            "wheel filename must have 5 or 6 dash-separated parts",
        )
    name, version = parts[0], parts[1]
    if len(parts) == 6 and not _BUILD_TAG_RE.match(parts[2]):
        raise NormalizationError(
            NormalizationErrorKind.UNSUPPORTED_EXTENSION,
            filename,
            f"invalid wheel build tag {parts[2]!r}",
        )
    if not all(_TAG_RE.match(tag) for tag in parts[2:]):
        raise NormalizationError(
            NormalizationErrorKind.UNSUPPORTED_EXTENSION, filename, "invalid wheel tag"
        )
    if not _NAME_RE.match(name):
        raise NormalizationError(
            NormalizationErrorKind.UNSUPPORTED_EXTENSION, filename, f"invalid project name {name!r}"
        )
    if not is_valid_version(version):
        raise NormalizationError(
            NormalizationErrorKind.AMBIGUOUS_VERSION, filename, f"invalid version {version!r}"
        )
    return ParsedFilename(name, version, FileKind.WHEEL, WHEEL_EXTENSION)


def _parse_egg(filename: str) -> ParsedFilename:
    stem = filename[: -len(EGG_EXTENSION)]
    parts = stem.split("-")
    # name-version[-pyX.Y[-platform]]
    shape_ok = 2 <= len(parts) <= 4 and (len(parts) < 3 or parts[2].startswith("py"))
    if not shape_ok or not all(_TAG_RE.match(part) for part in parts[2:]):
        raise NormalizationError(
            NormalizationErrorKind.UNSUPPORTED_EXTENSION, filename, "unrecognized egg filename"
        )
    name, version = parts[0], parts[1]
    if not _NAME_RE.match(name):
        raise NormalizationError(
            NormalizationErrorKind.UNSUPPORTED_EXTENSION, filename, f"invalid project name {name!r}"
        )
    if not is_valid_version(version):
        raise NormalizationError(
            NormalizationErrorKind.AMBIGUOUS_VERSION, filename, f"invalid version {version!r}"
        )
    return ParsedFilename(name, version, FileKind.OTHER, EGG_EXTENSION)


def _parse_sdist(filename: str, extension: str) -> ParsedFilename:
    stem = filename[: -len(extension)]
    # Legacy sdists may have dashes in the name, so try every split point
    # and require exactly one (name, version) reading.
    candidates = []
    for idx, char in enumerate(stem):
        if char != "-":
            continue
        name, version = stem[:idx], stem[idx + 1:]
        if _NAME_RE.match(name) and is_valid_version(version):
            candidates.append((name, version))

    if not candidates:
        raise NormalizationError(
            NormalizationErrorKind.AMBIGUOUS_VERSION, filename, "no valid name/version split"
        )
    if len(candidates) > 1:
        readings = ", ".join(f"{n} {v}" for n, v in candidates)
        raise NormalizationError(
            NormalizationErrorKind.AMBIGUOUS_VERSION,
            filename,
            f"several name/version readings: {readings}",
        )
    name, version = candidates[0]
    return ParsedFilename(name, version, FileKind.SDIST, extension)


def parse_filename(filename: str) -> ParsedFilename:
    """
    Split a distribution filename into its (unnormalized) name, verbatim
    version, kind and extension.
    """
    if _match_extension(filename, (WHEEL_EXTENSION,)):
        return _parse_wheel(filename)
    if _match_extension(filename, (EGG_EXTENSION,)):
        return _parse_egg(filename)
    extension = _match_extension(filename, SDIST_EXTENSIONS)
    if extension:
        return _parse_sdist(filename, extension)
    raise NormalizationError(NormalizationErrorKind.UNSUPPORTED_EXTENSION, filename)


def _sha256_from_digest(digest: Optional[str]) -> Optional[str]:
    if not digest:
        return None
    algorithm, _, value = digest.partition(":")
    if algorithm.lower() != "sha256" or not value:
        return None
    return value.lower()


def normalize_asset(asset: ReleaseAsset, repository_key: str = "") -> PackageFile:
    parsed = parse_filename(asset.filename)
    return PackageFile(
        project_name=normalize_project_name(parsed.name),
        version=parsed.version,
        original_filename=asset.filename,
        download_url=asset.download_url,
        file_kind=parsed.kind,
        size=asset.size,
        sha256=_sha256_from_digest(asset.digest),
        release_tag=asset.release_tag,
        repository_key=repository_key,
    )


def normalize_release_assets(assets: Iterable[ReleaseAsset], repository_key: str = "") -> List[PackageFile]:
    """
    Normalize every asset of a repository, skipping the ones that are not
    distribution files. One bad asset never aborts the rest.
    """
    files: List[PackageFile] = []
    seen: Set[str] = set()
    for asset in assets:
        try:
            package_file = normalize_asset(asset, repository_key)
        except NormalizationError as e:
            if e.kind is NormalizationErrorKind.UNSUPPORTED_EXTENSION:
                logger.debug(f"Skipping {repository_key} asset {e}")
            else:
                logger.warning(f"Skipping {repository_key} asset {e}")
            continue

        if package_file.original_filename in seen:
            # Same file attached to several releases: keep the newest one.
            logger.info(
                f"Ignoring duplicate asset {asset.filename} in {repository_key} release {asset.release_tag}"
            )
            continue
        seen.add(package_file.original_filename)
        files.append(package_file)
    return files

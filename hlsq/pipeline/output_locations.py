"""Cache-location policies: where a job writes its package and where to look for one."""

from typing import List
from hlsq.domain.errors import JobInputError
from hlsq.domain.models import CACHE_DIR_NAME, CacheLocation, JobSettings, SourceFile


def join_logical(*parts: str) -> str:
    cleaned = [p.strip("/") for p in parts if p and p.strip("/")]
    return "/" + "/".join(cleaned)


def output_path_for(source: SourceFile, settings: JobSettings) -> str:
    """Logical output directory for a job."""
    base = source.base_name
    location = settings.cache_location
    if location == CacheLocation.RELATIVE:
        return join_logical(source.directory, CACHE_DIR_NAME, base)
    if location == CacheLocation.HOME:
        return join_logical(CACHE_DIR_NAME, base)
    if location == CacheLocation.CUSTOM:
        custom = settings.custom_path.strip().rstrip("/")
        if not custom:
            raise JobInputError("Custom cache path is required but not provided")
        if custom.startswith("~"):
            custom = custom[1:]
        if not custom.endswith(CACHE_DIR_NAME):
            custom = join_logical(custom, CACHE_DIR_NAME)
        return join_logical(custom, base)
    raise JobInputError(f"Unknown cache location: {location}")


def candidate_cache_paths(source: SourceFile, cache_locations: List[str]) -> List[str]:
    """Locations probed for an existing package, next-to-source first."""
    base = source.base_name
    candidates = [join_logical(source.directory, CACHE_DIR_NAME, base)]
    for location in cache_locations:
        location = location.strip().rstrip("/")
        if location in (".", "", f"./{CACHE_DIR_NAME}"):
            path = join_logical(source.directory, CACHE_DIR_NAME, base)
        elif location == "~" or location.startswith("~/"):
            path = join_logical(CACHE_DIR_NAME, base)
        else:
            path = join_logical(location, base)
        if path not in candidates:
            candidates.append(path)
    return candidates


def cache_roots(cache_locations: List[str]) -> List[str]:
    """Directories holding one sub-directory per package, for statistics scans."""
    roots = [join_logical(CACHE_DIR_NAME)]
    for location in cache_locations:
        location = location.strip().rstrip("/")
        if location in (".", "", f"./{CACHE_DIR_NAME}") or location == "~" or location.startswith("~/"):
            continue
        root = join_logical(location)
        if root not in roots:
            roots.append(root)
    return roots

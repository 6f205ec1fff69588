import logging
import posixpath
import re

from acquisition.config import PathMappingConfig

_INVALID_CHARS_RE = re.compile(r'[<>"|?*]')


def _coerce(mapping):
    if isinstance(mapping, PathMappingConfig):
        return mapping
    return PathMappingConfig.model_validate(mapping or {})


def normalize_path(value):
    normalized = posixpath.normpath(value.replace("\\", "/"))
    if len(normalized) > 1 and normalized.endswith("/"):
        normalized = normalized[:-1]
    return normalized


def map_path(path, mapping):
    """Rewrite a download-client path into the local filesystem view.

    Returns ``(path, note)``; ``note`` is None when the prefix was rewritten
    and explains why the path came back unchanged otherwise.
    """
    mapping = _coerce(mapping)
    if not mapping.enabled:
        return path, "path mapping disabled"
    if not path or not mapping.remote_prefix or not mapping.local_prefix:
        logging.warning("Path mapping skipped: empty path or prefix (path=%r)", path)
        return path, "empty path or mapping prefix"

    remote = normalize_path(mapping.remote_prefix)
    local = normalize_path(mapping.local_prefix)
    candidate = normalize_path(path)
    if candidate == remote:
        relative = ""
    elif candidate.startswith(remote.rstrip("/") + "/"):
        relative = candidate[len(remote.rstrip("/")) + 1:]
    else:
        logging.warning("Path %r does not start with remote prefix %r; leaving unchanged", path, mapping.remote_prefix)
        return path, f"path does not start with {mapping.remote_prefix}"

    mapped = posixpath.join(local, relative) if relative else local
    logging.info("Mapped download path %s -> %s", path, mapped)
    return mapped, None


def transform(path, mapping):
    return map_path(path, mapping)[0]


def validate_mapping(mapping):
    mapping = _coerce(mapping)
    if not mapping.enabled:
        return []
    errors = []
    for label, value in (("remote_prefix", mapping.remote_prefix), ("local_prefix", mapping.local_prefix)):
        if not value or not value.strip():
            errors.append(f"{label} cannot be empty when path mapping is enabled")
        elif _INVALID_CHARS_RE.search(value):
            errors.append(f"{label} contains invalid characters")
    if not errors and normalize_path(mapping.remote_prefix) == normalize_path(mapping.local_prefix):
        logging.warning("Path mapping prefixes are identical; mapping has no effect")
    return errors

import logging
import os
import re
import shutil
import string
import unicodedata

from acquisition.errors import AcquisitionError, ConfigurationError
from acquisition.paths import _is_within_base, ensure_dir
from acquisition.processing import job_logger, load_request
from acquisition.request_state import AVAILABLE, DOWNLOADED, PROCESSING

_TEMPLATE_FIELDS = {"author", "title", "external_id", "year", "narrator"}
_FIELD_FALLBACKS = {"author": "Unknown Author", "title": "Untitled"}


def sanitize_for_filesystem(name, maxlen=180):
    """Remove characters unsafe for path segments and trim length."""
    if not name:
        return ""
    name = unicodedata.normalize("NFC", str(name))
    name = re.sub(r"[\\/:*?\"<>|\x00-\x1f]+", "", name)
    name = re.sub(r"\s+", " ", name).strip().strip(".")
    if len(name) > maxlen:
        name = name[:maxlen].rstrip()
    return name


def render_destination(template, target):
    fields = {name for _text, name, _spec, _conv in string.Formatter().parse(template) if name}
    unknown = fields - _TEMPLATE_FIELDS
    if unknown:
        raise ConfigurationError(f"Unknown destination template fields: {', '.join(sorted(unknown))}")
    values = {}
    for name in _TEMPLATE_FIELDS:
        value = sanitize_for_filesystem(target.get(name))
        values[name] = value or _FIELD_FALLBACKS.get(name, "")
    rendered = template.format(**values)
    segments = [sanitize_for_filesystem(part) for part in rendered.replace("\\", "/").split("/")]
    segments = [part for part in segments if part and part != ".."]
    if not segments:
        raise ConfigurationError(f"Destination template {template!r} rendered an empty path")
    return os.path.join(*segments)


def copy_into_library(source_paths, destination):
    ensure_dir(destination)
    copied = []
    for source in source_paths:
        if not os.path.exists(source):
            raise AcquisitionError(
                f"downloaded content missing: {source}",
                public_message="Downloaded files were not found; check the path mapping",
            )
        target = os.path.join(destination, os.path.basename(os.path.normpath(source)))
        if os.path.isdir(source):
            shutil.copytree(source, target, dirs_exist_ok=True)
        else:
            shutil.copy2(source, target)
        copied.append(target)
        logging.info("Copied %s -> %s", source, target)
    return copied


def process_organize_files(ctx, job, *, on_primary_complete=None):
    log = job_logger(ctx, job, "OrganizeFiles")
    request, skipped = load_request(ctx, job, log, {PROCESSING})
    if skipped:
        return skipped
    source_paths = job.payload.get("source_paths") or []
    if not source_paths:
        raise AcquisitionError(f"organize job {job.id} has no source paths")
    template = job.payload.get("destination_template") or ctx.config.organize.destination_template

    relative = render_destination(template, request.target)
    destination = os.path.join(ctx.paths.library_dir, relative)
    if not _is_within_base(destination, ctx.paths.library_dir):
        raise ConfigurationError(f"Destination {destination} is outside the library directory")
    copied = copy_into_library(source_paths, destination)

    final_status = AVAILABLE if ctx.config.organize.mark_available else DOWNLOADED
    ctx.requests.transition(request.id, final_status, progress=100, final_path=destination)
    log.info(f"Organized {len(copied)} item(s) into {destination}")

    result = {"final_path": destination, "status": final_status, "file_count": len(copied)}
    sidecar = ctx.config.sidecar
    if not request.is_sidecar and sidecar.enabled and sidecar.auto_fetch and on_primary_complete:
        try:
            spawned = on_primary_complete(request.id)
        except (ConfigurationError, ValueError) as exc:
            log.warning(f"E-book sidecar not started: {exc}")
        else:
            result["sidecar_request_id"] = spawned["request_id"]
    return result

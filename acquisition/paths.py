import os
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _env_path(name, default):
    value = os.environ.get(name)
    if value:
        return os.path.abspath(value)
    return os.path.abspath(default)


# Base directories for all file access. Override via env for container mounts.
CONFIG_DIR = _env_path("ACQUIRE_CONFIG_DIR", PROJECT_ROOT / "config")
DATA_DIR = _env_path("ACQUIRE_DATA_DIR", PROJECT_ROOT)
LIBRARY_DIR = _env_path("ACQUIRE_LIBRARY_DIR", PROJECT_ROOT / "library")
LOG_DIR = _env_path("ACQUIRE_LOG_DIR", PROJECT_ROOT / "logs")


@dataclass(frozen=True)
class PipelinePaths:
    log_dir: str
    db_path: str
    staging_dir: str
    library_dir: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def resolve_config_path(path):
    if not path:
        resolved = os.path.join(CONFIG_DIR, "config.json")
    elif os.path.isabs(path):
        resolved = os.path.abspath(path)
    else:
        resolved = os.path.abspath(os.path.join(CONFIG_DIR, path))
    if not _is_within_base(resolved, CONFIG_DIR):
        raise ValueError(f"Config path must be within CONFIG_DIR: {CONFIG_DIR}")
    return resolved


def _is_within_base(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    return os.path.commonpath([real, base]) == base


def build_pipeline_paths(data_dir=None, library_dir=None, log_dir=None):
    data_dir = data_dir or DATA_DIR
    return PipelinePaths(
        log_dir=log_dir or LOG_DIR,
        db_path=os.path.join(data_dir, "database", "acquisition.sqlite"),
        staging_dir=os.path.join(data_dir, "staging"),
        library_dir=library_dir or LIBRARY_DIR,
    )

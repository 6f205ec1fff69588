import json

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

DEFAULT_INDEXER_PRIORITY = 10


class IndexerConfig(BaseModel):
    id: int
    name: str = ""
    priority: int = Field(default=DEFAULT_INDEXER_PRIORITY, ge=1, le=25)


class FlagRule(BaseModel):
    name: str
    points: float
    flag: str | None = None
    title_contains: str | None = None

    @model_validator(mode="after")
    def _needs_predicate(self):
        if not self.flag and not self.title_contains:
            raise ValueError(f"flag rule '{self.name}' needs flag or title_contains")
        return self


class ProwlarrConfig(BaseModel):
    url: str = ""
    api_key: str = ""


class DownloadClientConfig(BaseModel):
    name: str = "qbittorrent"
    url: str = ""
    username: str = ""
    password: str = ""
    category: str = "audiobooks"
    save_path: str | None = None


class PathMappingConfig(BaseModel):
    enabled: bool = False
    remote_prefix: str = ""
    local_prefix: str = ""


class SidecarSourceConfig(BaseModel):
    name: str
    enabled: bool = True
    trust: float = Field(default=15, ge=0, le=30)
    kind: str | None = None
    url: str = ""
    api_key: str = ""


class SidecarConfig(BaseModel):
    enabled: bool = False
    auto_fetch: bool = False
    preferred_format: str = "epub"
    sources: list[SidecarSourceConfig] = Field(default_factory=list)

    @field_validator("preferred_format")
    @classmethod
    def _lower_format(cls, value):
        return value.strip().lower().lstrip(".") or "epub"

    def enabled_sources(self):
        return [source for source in self.sources if source.enabled]


class JobsConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    retry_delay_seconds: float = Field(default=30, ge=0)
    workers: int = Field(default=2, ge=1)
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    monitor_interval_seconds: float = Field(default=30, ge=0)
    monitor_max_idle_polls: int = Field(default=120, ge=1)


class ResearchConfig(BaseModel):
    interval_minutes: int = Field(default=360, ge=1)


class HttpConfig(BaseModel):
    connect_timeout: float = Field(default=10, gt=0)
    read_timeout: float = Field(default=60, gt=0)
    max_response_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    max_download_bytes: int = Field(default=200 * 1024 * 1024, gt=0)

    @property
    def timeout(self):
        return (self.connect_timeout, self.read_timeout)


class OrganizeConfig(BaseModel):
    destination_template: str = "{author}/{title}"
    mark_available: bool = False


class PipelineConfig(BaseModel):
    indexers: list[IndexerConfig] = Field(default_factory=list)
    flag_rules: list[FlagRule] = Field(default_factory=list)
    prowlarr: ProwlarrConfig = Field(default_factory=ProwlarrConfig)
    download_client: DownloadClientConfig = Field(default_factory=DownloadClientConfig)
    path_mapping: PathMappingConfig = Field(default_factory=PathMappingConfig)
    sidecar: SidecarConfig = Field(default_factory=SidecarConfig)
    jobs: JobsConfig = Field(default_factory=JobsConfig)
    research: ResearchConfig = Field(default_factory=ResearchConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    organize: OrganizeConfig = Field(default_factory=OrganizeConfig)

    def indexer_priorities(self):
        return {indexer.id: indexer.priority for indexer in self.indexers}


def parse_config(raw):
    return PipelineConfig.model_validate(raw or {})


def load_config(path):
    with open(path, "r") as f:
        return parse_config(json.load(f))


def validate_config(raw):
    if not isinstance(raw, dict):
        return ["config must be a JSON object"]
    try:
        PipelineConfig.model_validate(raw)
    except ValidationError as exc:
        errors = []
        for err in exc.errors():
            location = ".".join(str(part) for part in err["loc"]) or "config"
            errors.append(f"{location}: {err['msg']}")
        return errors
    return []

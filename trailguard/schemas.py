from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator
from sqlalchemy.engine import make_url

from trailguard.constants import (
    DEFAULT_BROWSERS,
    DEFAULT_DISCOVERY_PATHS,
    DEFAULT_DISCOVERY_PATTERN,
    SERVER_IDLE_TIMEOUT_SECONDS,
    SERVER_START_TIMEOUT_SECONDS,
)


class OnFailure(str, Enum):
    skip = "skip"
    fail = "fail"
    ignore = "ignore"


class WorkflowStatus(str, Enum):
    passed = "passed"
    failed = "failed"
    skipped = "skipped"


class WorkflowReference(BaseModel):
    id: Optional[str] = None
    file: str
    depends_on: List[str] = Field(default_factory=list)
    on_failure: Optional[OnFailure] = None
    variables: Dict[str, str] = Field(default_factory=dict)

    model_config = {"frozen": True}


class WebServerConfig(BaseModel):
    url: str
    command: Optional[str] = None
    auto: bool = False
    static: Optional[str] = None
    port: Optional[int] = Field(default=None, gt=0)
    workdir: Optional[str] = None
    reuse_existing_server: Optional[bool] = None
    timeout: float = Field(default=SERVER_START_TIMEOUT_SECONDS, gt=0)
    idle_timeout: float = Field(default=SERVER_IDLE_TIMEOUT_SECONDS, gt=0)


class WebConfig(BaseModel):
    base_url: Optional[str] = None
    browser: str = "chromium"
    headless: bool = True

    @field_validator("browser")
    @classmethod
    def validate_browser(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in DEFAULT_BROWSERS:
            raise ValueError(f"Unsupported browser '{value}'. Choose one of: {', '.join(DEFAULT_BROWSERS)}")
        return normalized


class TrackingConfig(BaseModel):
    http: bool = True
    file: bool = True
    track_dir: Optional[str] = None


class AppwriteSettings(BaseModel):
    endpoint: str
    project_id: str
    api_key: Optional[str] = None
    cleanup: bool = False
    cleanup_on_failure: bool = True


# Provider variants -------------------------------------------------------------------
class AppwriteProviderConfig(BaseModel):
    type: Literal["appwrite"] = "appwrite"
    endpoint: str
    project_id: str
    api_key: str = ""

    SECRET_FIELDS: ClassVar[Tuple[str, ...]] = ("api_key",)

    def identity(self) -> Dict[str, Any]:
        return {"type": self.type, "endpoint": self.endpoint, "project_id": self.project_id}


class _SqlServerProviderConfig(BaseModel):
    type: str
    url: str = ""
    schema_name: Optional[str] = "public"

    SECRET_FIELDS: ClassVar[Tuple[str, ...]] = ("url",)

    def identity(self) -> Dict[str, Any]:
        identity: Dict[str, Any] = {"type": self.type, "schema_name": self.schema_name}
        if self.url:
            parsed = make_url(self.url)
            identity.update({"host": parsed.host, "port": parsed.port, "database": parsed.database})
        return identity


class PostgresProviderConfig(_SqlServerProviderConfig):
    type: Literal["postgres"] = "postgres"


class MysqlProviderConfig(_SqlServerProviderConfig):
    type: Literal["mysql"] = "mysql"
    schema_name: Optional[str] = None


class SqliteProviderConfig(BaseModel):
    type: Literal["sqlite"] = "sqlite"
    database: str
    readonly: bool = False

    SECRET_FIELDS: ClassVar[Tuple[str, ...]] = ()

    def identity(self) -> Dict[str, Any]:
        return {"type": self.type, "database": self.database, "readonly": self.readonly}


ProviderConfig = Annotated[
    Union[AppwriteProviderConfig, PostgresProviderConfig, MysqlProviderConfig, SqliteProviderConfig],
    Field(discriminator="type"),
]
PROVIDER_CONFIG_ADAPTER: TypeAdapter = TypeAdapter(ProviderConfig)


class DiscoverySettings(BaseModel):
    enabled: bool = True
    paths: List[str] = Field(default_factory=lambda: list(DEFAULT_DISCOVERY_PATHS))
    pattern: str = DEFAULT_DISCOVERY_PATTERN


class CleanupConfig(BaseModel):
    provider: Optional[ProviderConfig] = None
    parallel: bool = False
    retries: int = Field(default=3, ge=0)
    types: Dict[str, str] = Field(default_factory=dict)
    discover: DiscoverySettings = Field(default_factory=DiscoverySettings)
    handlers: List[str] = Field(default_factory=list)
    scan_untracked: bool = False


class PipelineConfig(BaseModel):
    web: WebConfig = Field(default_factory=WebConfig)
    web_server: Optional[WebServerConfig] = None
    tracking: TrackingConfig = Field(default_factory=TrackingConfig)
    appwrite: Optional[AppwriteSettings] = None
    cleanup: Optional[CleanupConfig] = None


class PipelineDefinition(BaseModel):
    name: str
    workflows: List[WorkflowReference] = Field(..., min_length=1)
    on_failure: OnFailure = OnFailure.skip
    cleanup_on_failure: bool = True
    config: PipelineConfig = Field(default_factory=PipelineConfig)


# Results -----------------------------------------------------------------------------
class UntrackedScanResult(BaseModel):
    success: bool = True
    scanned: int = 0
    deleted: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)


class CleanupResult(BaseModel):
    success: bool
    deleted: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    untracked: Optional[UntrackedScanResult] = None


class FailedCleanupRecord(BaseModel):
    session_id: str
    timestamp: str
    resources: List[Dict[str, Any]] = Field(default_factory=list)
    provider_config: Dict[str, Any] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)


class WorkflowNodeResult(BaseModel):
    id: str
    file: str
    label: str
    status: WorkflowStatus
    error: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class PipelineResult(BaseModel):
    status: WorkflowStatus
    session_id: str
    workflows: List[WorkflowNodeResult] = Field(default_factory=list)
    cleanup_result: Optional[CleanupResult] = None

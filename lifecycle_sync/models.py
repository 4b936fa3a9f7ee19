"""Domain records shared by the orchestrator, adapters and stores."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def to_jsonable(obj: Any) -> Any:
    """Convert dataclasses / enums / datetimes into JSON-compatible values."""
    if hasattr(obj, "__dataclass_fields__"):
        return to_jsonable(asdict(obj))
    if isinstance(obj, dict):
        return {str(to_jsonable(k)): to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_jsonable(v) for v in obj]
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, timedelta):
        return obj.total_seconds()
    return obj


# ------------------------------------------------------------------
# Enumerations
# ------------------------------------------------------------------

class DataSourceType(str, Enum):
    AZURE_DEVOPS = "azure_devops"
    SHAREPOINT = "sharepoint"
    SERVICENOW = "servicenow"
    IIS_DATABASE = "iis_database"

    @property
    def display_name(self) -> str:
        return {
            DataSourceType.AZURE_DEVOPS: "Azure DevOps",
            DataSourceType.SHAREPOINT: "SharePoint",
            DataSourceType.SERVICENOW: "ServiceNow",
            DataSourceType.IIS_DATABASE: "IIS Database",
        }[self]


class SyncJobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (SyncJobStatus.PENDING, SyncJobStatus.RUNNING)


class SyncErrorType(str, Enum):
    CONNECTION_ERROR = "connection_error"
    AUTHENTICATION_ERROR = "authentication_error"
    AUTHORIZATION_ERROR = "authorization_error"
    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"
    PARSE_ERROR = "parse_error"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    UNKNOWN = "unknown"


class ConflictType(str, Enum):
    NAME_MISMATCH = "name_mismatch"
    MISSING_REPOSITORY = "missing_repository"
    INVALID_REPOSITORY = "invalid_repository"
    USER_NOT_FOUND = "user_not_found"
    DUPLICATE_REPOSITORY = "duplicate_repository"
    MISSING_DOCUMENTATION = "missing_documentation"
    ROLE_CONFLICT = "role_conflict"
    USAGE_DATA_MISMATCH = "usage_data_mismatch"


class MatchConfidence(IntEnum):
    NO_MATCH = 0
    LOW = 1      # manual review recommended
    MEDIUM = 2   # likely correct, verify
    HIGH = 3
    EXACT = 4    # email / UPN


class MatchMethod(str, Enum):
    NONE = "none"
    EXACT_UPN = "exact_upn"
    EXACT_EMAIL = "exact_email"
    EXACT_ALIAS = "exact_alias"
    DISPLAY_NAME_EXACT = "display_name_exact"
    NAME_PERMUTATION = "name_permutation"
    DISPLAY_NAME_FUZZY = "display_name_fuzzy"


class AliasKind(str, Enum):
    EMAIL = "email"
    NAME = "name"
    EMPLOYEE_ID = "employee_id"
    USERNAME = "username"


# ------------------------------------------------------------------
# Job tracking
# ------------------------------------------------------------------

@dataclass(frozen=True)
class SyncJob:
    id: str
    source: DataSourceType
    start_time: datetime
    status: SyncJobStatus = SyncJobStatus.PENDING
    end_time: Optional[datetime] = None
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    error_count: int = 0
    error_message: Optional[str] = None
    triggered_by: str = "System"

    @property
    def duration(self) -> Optional[timedelta]:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncJob":
        return cls(
            id=data["id"],
            source=DataSourceType(data["source"]),
            start_time=_dt(data["start_time"]),
            status=SyncJobStatus(data["status"]),
            end_time=_dt(data.get("end_time")),
            records_processed=data.get("records_processed") or 0,
            records_created=data.get("records_created") or 0,
            records_updated=data.get("records_updated") or 0,
            error_count=data.get("error_count") or 0,
            error_message=data.get("error_message"),
            triggered_by=data.get("triggered_by") or "System",
        )


@dataclass(frozen=True)
class SyncError:
    message: str
    type: SyncErrorType = SyncErrorType.UNKNOWN
    entity_id: Optional[str] = None
    entity_name: Optional[str] = None
    technical_details: Optional[str] = None
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SyncStepResult:
    """Outcome counts for one named step of a sync."""

    step_name: str
    success: bool = True
    success_count: int = 0
    fail_count: int = 0
    skip_count: int = 0
    error_message: Optional[str] = None
    duration: timedelta = timedelta(0)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.success_count + self.fail_count + self.skip_count


@dataclass(frozen=True)
class DataSyncResult:
    success: bool
    start_time: datetime
    end_time: datetime
    source: Optional[DataSourceType] = None
    job_id: Optional[str] = None
    status: Optional[SyncJobStatus] = None
    error_message: Optional[str] = None
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_unchanged: int = 0
    errors: list[SyncError] = field(default_factory=list)
    conflicts_detected: list["DataConflict"] = field(default_factory=list)
    step_results: list[SyncStepResult] = field(default_factory=list)

    @property
    def duration(self) -> timedelta:
        return self.end_time - self.start_time

    def step(self, name: str) -> Optional[SyncStepResult]:
        for step in self.step_results:
            if step.step_name == name:
                return step
        return None

    @classmethod
    def failed(
        cls,
        source: Optional[DataSourceType],
        start_time: datetime,
        error_message: str,
        step_results: Optional[list[SyncStepResult]] = None,
    ) -> "DataSyncResult":
        return cls(
            success=False,
            source=source,
            start_time=start_time,
            end_time=utcnow(),
            error_message=error_message,
            step_results=list(step_results or []),
        )


@dataclass(frozen=True)
class SourceResult(Generic[T]):
    """Outcome of one adapter call: payload or classified error, plus timing."""

    success: bool
    data: Optional[T] = None
    error_type: Optional[SyncErrorType] = None
    error_message: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime = field(default_factory=utcnow)

    @property
    def duration(self) -> timedelta:
        return self.finished_at - self.started_at

    @classmethod
    def ok(cls, data: T, started_at: Optional[datetime] = None) -> "SourceResult[T]":
        return cls(success=True, data=data, started_at=started_at or utcnow())

    @classmethod
    def fail(
        cls,
        error_type: SyncErrorType,
        message: str,
        started_at: Optional[datetime] = None,
    ) -> "SourceResult[T]":
        return cls(
            success=False,
            error_type=error_type,
            error_message=message,
            started_at=started_at or utcnow(),
        )


@dataclass(frozen=True)
class ConnectionResult:
    success: bool
    message: Optional[str] = None
    response_time: Optional[timedelta] = None
    version: Optional[str] = None
    details: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DataSourceStatus:
    source: DataSourceType
    name: str
    is_configured: bool = False
    is_connected: bool = False
    last_sync_time: Optional[datetime] = None
    last_sync_status: Optional[SyncJobStatus] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class SyncStatistics:
    total_jobs: int
    successful_jobs: int
    failed_jobs: int
    average_duration: timedelta
    total_records_synced: int
    total_conflicts: int
    unresolved_conflicts: int
    last_successful_sync: dict[DataSourceType, Optional[datetime]]


# ------------------------------------------------------------------
# Conflicts
# ------------------------------------------------------------------

@dataclass(frozen=True)
class DataConflict:
    id: str
    application_id: str
    application_name: str
    kind: ConflictType
    description: str
    source_a: Optional[str] = None
    value_a: Optional[str] = None
    source_b: Optional[str] = None
    value_b: Optional[str] = None
    role: Optional[str] = None
    value_kind: Optional[AliasKind] = None
    detected_at: datetime = field(default_factory=utcnow)
    is_resolved: bool = False
    resolution: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_by_name: Optional[str] = None
    resolved_at: Optional[datetime] = None

    @property
    def natural_key(self) -> tuple[str, str, str, str, str]:
        """(application, kind, disputed value[, role, value kind]) used for dedup."""
        value = " ".join((self.value_a or "").split()).lower()
        return (
            self.application_id,
            self.kind.value,
            value,
            (self.role or "").lower(),
            self.value_kind.value if self.value_kind else "",
        )

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DataConflict":
        return cls(
            id=data["id"],
            application_id=data["application_id"],
            application_name=data["application_name"],
            kind=ConflictType(data["kind"]),
            description=data["description"],
            source_a=data.get("source_a"),
            value_a=data.get("value_a"),
            source_b=data.get("source_b"),
            value_b=data.get("value_b"),
            role=data.get("role"),
            value_kind=AliasKind(data["value_kind"]) if data.get("value_kind") else None,
            detected_at=_dt(data["detected_at"]),
            is_resolved=bool(data.get("is_resolved")),
            resolution=data.get("resolution"),
            resolved_by=data.get("resolved_by"),
            resolved_by_name=data.get("resolved_by_name"),
            resolved_at=_dt(data.get("resolved_at")),
        )


# ------------------------------------------------------------------
# Applications (role source + aggregated facts)
# ------------------------------------------------------------------

@dataclass(frozen=True)
class RoleAssignment:
    role: str
    person: str
    identity_key: Optional[str] = None
    match_confidence: Optional[MatchConfidence] = None


@dataclass(frozen=True)
class DocumentationFolder:
    application_name: str
    folder_path: str
    documents: tuple[str, ...] = ()


@dataclass(frozen=True)
class DocumentationStatus:
    folder_path: str
    document_count: int
    missing: tuple[str, ...] = ()
    completeness: float = 0.0
    checked_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class UsageMetrics:
    requests: int = 0
    unique_users: int = 0
    last_activity: Optional[datetime] = None
    period_days: int = 30


@dataclass(frozen=True)
class Application:
    id: str
    name: str
    repository_url: Optional[str] = None
    role_assignments: tuple[RoleAssignment, ...] = ()
    documentation: Optional[DocumentationStatus] = None
    usage: Optional[UsageMetrics] = None
    repository_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    def occupants(self, role: str) -> list[RoleAssignment]:
        return [
            a for a in self.role_assignments
            if a.role.lower() == role.lower() and a.person.strip()
        ]

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Application":
        docs = data.get("documentation")
        usage = data.get("usage")
        return cls(
            id=data["id"],
            name=data["name"],
            repository_url=data.get("repository_url"),
            role_assignments=tuple(
                RoleAssignment(
                    role=r["role"],
                    person=r["person"],
                    identity_key=r.get("identity_key"),
                    match_confidence=(
                        MatchConfidence(r["match_confidence"])
                        if r.get("match_confidence") is not None else None
                    ),
                )
                for r in data.get("role_assignments") or []
            ),
            documentation=DocumentationStatus(
                folder_path=docs["folder_path"],
                document_count=docs["document_count"],
                missing=tuple(docs.get("missing") or ()),
                completeness=docs.get("completeness", 0.0),
                checked_at=_dt(docs["checked_at"]),
            ) if docs else None,
            usage=UsageMetrics(
                requests=usage.get("requests", 0),
                unique_users=usage.get("unique_users", 0),
                last_activity=_dt(usage.get("last_activity")),
                period_days=usage.get("period_days", 30),
            ) if usage else None,
            repository_id=data.get("repository_id"),
            updated_at=_dt(data.get("updated_at")),
        )


# ------------------------------------------------------------------
# Repositories (repository source)
# ------------------------------------------------------------------

@dataclass(frozen=True)
class Repository:
    id: str
    name: str
    url: str
    clone_url: Optional[str] = None
    default_branch: Optional[str] = None
    project: Optional[str] = None
    size_bytes: Optional[int] = None
    is_disabled: bool = False


@dataclass(frozen=True)
class TechStack:
    primary_stack: str = "unknown"
    frameworks: tuple[str, ...] = ()
    languages: tuple[str, ...] = ()
    target_framework: Optional[str] = None
    detected_pattern: Optional[str] = None


@dataclass(frozen=True)
class CommitHistory:
    total_commits: int = 0
    last_commit_date: Optional[datetime] = None
    contributors: tuple[str, ...] = ()


@dataclass(frozen=True)
class PackageReference:
    name: str
    package_manager: str
    version: Optional[str] = None
    source_file: Optional[str] = None
    is_development_dependency: bool = False


@dataclass(frozen=True)
class ReadmeStatus:
    exists: bool = False
    line_count: Optional[int] = None
    quality_score: Optional[int] = None


@dataclass(frozen=True)
class PipelineStatus:
    status: str = "none"
    result: str = "none"
    pipeline_name: Optional[str] = None
    start_time: Optional[datetime] = None
    finish_time: Optional[datetime] = None


@dataclass(frozen=True)
class SecurityFindings:
    advanced_security_enabled: bool = False
    last_scan_date: Optional[datetime] = None
    open_critical: int = 0
    open_high: int = 0
    open_medium: int = 0
    open_low: int = 0
    exposed_secrets: int = 0
    dependency_alerts: int = 0


@dataclass(frozen=True)
class SyncedRepository:
    id: str
    name: str
    url: str
    clone_url: Optional[str] = None
    default_branch: Optional[str] = None
    project: Optional[str] = None
    size_bytes: Optional[int] = None
    is_disabled: bool = False
    tech_stack: Optional[TechStack] = None
    commits: Optional[CommitHistory] = None
    packages: tuple[PackageReference, ...] = ()
    readme: Optional[ReadmeStatus] = None
    pipeline: Optional[PipelineStatus] = None
    security: Optional[SecurityFindings] = None
    synced_at: datetime = field(default_factory=utcnow)
    synced_by: str = "SyncOrchestrator"

    @classmethod
    def from_repository(cls, repo: Repository, synced_at: datetime, synced_by: str) -> "SyncedRepository":
        return cls(
            id=repo.id,
            name=repo.name,
            url=repo.url,
            clone_url=repo.clone_url,
            default_branch=repo.default_branch,
            project=repo.project,
            size_bytes=repo.size_bytes,
            is_disabled=repo.is_disabled,
            synced_at=synced_at,
            synced_by=synced_by,
        )

    @property
    def has_security_data(self) -> bool:
        return self.security is not None and (
            self.security.advanced_security_enabled or self.security.last_scan_date is not None
        )

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncedRepository":
        ts = data.get("tech_stack")
        commits = data.get("commits")
        readme = data.get("readme")
        pipeline = data.get("pipeline")
        security = data.get("security")
        return cls(
            id=data["id"],
            name=data["name"],
            url=data["url"],
            clone_url=data.get("clone_url"),
            default_branch=data.get("default_branch"),
            project=data.get("project"),
            size_bytes=data.get("size_bytes"),
            is_disabled=bool(data.get("is_disabled")),
            tech_stack=TechStack(
                primary_stack=ts.get("primary_stack", "unknown"),
                frameworks=tuple(ts.get("frameworks") or ()),
                languages=tuple(ts.get("languages") or ()),
                target_framework=ts.get("target_framework"),
                detected_pattern=ts.get("detected_pattern"),
            ) if ts else None,
            commits=CommitHistory(
                total_commits=commits.get("total_commits", 0),
                last_commit_date=_dt(commits.get("last_commit_date")),
                contributors=tuple(commits.get("contributors") or ()),
            ) if commits else None,
            packages=tuple(PackageReference(**p) for p in data.get("packages") or ()),
            readme=ReadmeStatus(**readme) if readme else None,
            pipeline=PipelineStatus(
                status=pipeline.get("status", "none"),
                result=pipeline.get("result", "none"),
                pipeline_name=pipeline.get("pipeline_name"),
                start_time=_dt(pipeline.get("start_time")),
                finish_time=_dt(pipeline.get("finish_time")),
            ) if pipeline else None,
            security=SecurityFindings(
                **{**security, "last_scan_date": _dt(security.get("last_scan_date"))}
            ) if security else None,
            synced_at=_dt(data["synced_at"]),
            synced_by=data.get("synced_by") or "SyncOrchestrator",
        )

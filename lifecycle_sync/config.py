"""Configuration via environment variables (and an optional .env file).

Every external source is optional: a source whose settings are missing is
reported as unconfigured and skipped by the orchestrator.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from lifecycle_sync.errors import ConfigurationError
from lifecycle_sync.models import DataSourceType, MatchConfidence

DEFAULT_SYNC_ORDER: tuple[DataSourceType, ...] = (
    DataSourceType.SERVICENOW,      # roster and role owners first
    DataSourceType.SHAREPOINT,      # documentation keyed by app name
    DataSourceType.AZURE_DEVOPS,    # repositories
    DataSourceType.IIS_DATABASE,    # usage last
)


@dataclass(frozen=True)
class DatabaseConfig:
    url: str
    min_connections: int = 1
    max_connections: int = 5


@dataclass(frozen=True)
class AzureDevOpsConfig:
    org_url: str
    project: str
    pat: str
    commit_history_days: int = 365


@dataclass(frozen=True)
class ServiceNowConfig:
    instance_url: str
    user: str
    password: str
    table: str = "cmdb_ci_business_app"


@dataclass(frozen=True)
class SharePointConfig:
    site_id: str
    token: str
    library: str = "Applications"
    graph_base_url: str = "https://graph.microsoft.com/v1.0"


@dataclass(frozen=True)
class IisDatabaseConfig:
    url: str
    lookback_days: int = 30


@dataclass(frozen=True)
class MatchingConfig:
    min_confidence: MatchConfidence = MatchConfidence.MEDIUM
    create_conflicts: bool = True


@dataclass(frozen=True)
class SyncConfig:
    auto_sync_enabled: bool = True
    sync_day_of_week: int = 0  # 0 = Sunday
    sync_hour: int = 2
    sync_minute: int = 0
    sync_timeout_minutes: float = 60
    max_retries: int = 3
    retry_delay_seconds: float = 30
    run_conflict_detection: bool = True
    enabled_sources: tuple[DataSourceType, ...] = DEFAULT_SYNC_ORDER
    sync_order: tuple[DataSourceType, ...] = DEFAULT_SYNC_ORDER
    dev_mode_repo_limit: int = 0
    job_history_limit: int = 100
    mandatory_roles: tuple[str, ...] = ("Owner",)
    # Independent per-source timers, in minutes. Empty = weekly sync_all only.
    source_intervals_min: dict[DataSourceType, int] = field(default_factory=dict)
    misfire_grace_time: int = 300


@dataclass(frozen=True)
class AppConfig:
    database: Optional[DatabaseConfig] = None
    sync: SyncConfig = field(default_factory=SyncConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    azure_devops: Optional[AzureDevOpsConfig] = None
    servicenow: Optional[ServiceNowConfig] = None
    sharepoint: Optional[SharePointConfig] = None
    iis_database: Optional[IisDatabaseConfig] = None


# ------------------------------------------------------------------
# Parsing helpers
# ------------------------------------------------------------------

def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def parse_sources(raw: str) -> tuple[DataSourceType, ...]:
    """Parse a comma separated list of source names."""
    sources: list[DataSourceType] = []
    for name in (s.strip() for s in raw.split(",")):
        if not name:
            continue
        try:
            sources.append(DataSourceType(name.lower()))
        except ValueError:
            raise ConfigurationError(f"Unknown data source: {name!r}")
    return tuple(sources)


def parse_intervals(raw: str) -> dict[DataSourceType, int]:
    """Parse "servicenow=60,azure_devops=30" into per-source minutes."""
    intervals: dict[DataSourceType, int] = {}
    for part in (p.strip() for p in raw.split(",")):
        if not part:
            continue
        name, sep, minutes = part.partition("=")
        if not sep:
            raise ConfigurationError(f"Bad interval entry {part!r}, expected source=minutes")
        (source,) = parse_sources(name)
        try:
            intervals[source] = int(minutes)
        except ValueError:
            raise ConfigurationError(f"Bad interval minutes in {part!r}")
    return intervals


def _database_url() -> Optional[str]:
    url = os.environ.get("DATABASE_URL", "")
    if url:
        return url
    host = os.environ.get("PG_HOST")
    if not host:
        return None
    port = os.environ.get("PG_PORT", "5432")
    user = os.environ.get("PG_USER", "lifecycle")
    password = os.environ.get("PG_PASSWORD", "")
    database = os.environ.get("PG_DATABASE", "lifecycle")
    return f"postgresql://{user}:{password}@{host}:{port}/{database}"


def load_config() -> AppConfig:
    """Load configuration from environment variables. Unconfigured sources are skipped."""
    load_dotenv()

    database = None
    db_url = _database_url()
    if db_url:
        database = DatabaseConfig(
            url=db_url,
            min_connections=_env_int("DB_MIN_CONNECTIONS", 1),
            max_connections=_env_int("DB_MAX_CONNECTIONS", 5),
        )

    order_raw = os.environ.get("SYNC_ORDER", "")
    enabled_raw = os.environ.get("SYNC_ENABLED_SOURCES", "")
    roles_raw = os.environ.get("SYNC_MANDATORY_ROLES", "")
    sync = SyncConfig(
        auto_sync_enabled=_env_bool("SYNC_AUTO_ENABLED", True),
        sync_day_of_week=_env_int("SYNC_DAY_OF_WEEK", 0),
        sync_hour=_env_int("SYNC_HOUR", 2),
        sync_minute=_env_int("SYNC_MINUTE", 0),
        sync_timeout_minutes=_env_float("SYNC_TIMEOUT_MINUTES", 60),
        max_retries=_env_int("SYNC_MAX_RETRIES", 3),
        retry_delay_seconds=_env_float("SYNC_RETRY_DELAY_SECONDS", 30),
        run_conflict_detection=_env_bool("SYNC_RUN_CONFLICT_DETECTION", True),
        enabled_sources=parse_sources(enabled_raw) if enabled_raw else DEFAULT_SYNC_ORDER,
        sync_order=parse_sources(order_raw) if order_raw else DEFAULT_SYNC_ORDER,
        dev_mode_repo_limit=_env_int("SYNC_DEV_MODE_REPO_LIMIT", 0),
        job_history_limit=_env_int("SYNC_JOB_HISTORY_LIMIT", 100),
        mandatory_roles=tuple(r.strip() for r in roles_raw.split(",") if r.strip()) or ("Owner",),
        source_intervals_min=parse_intervals(os.environ.get("SYNC_SOURCE_INTERVALS", "")),
        misfire_grace_time=_env_int("SYNC_MISFIRE_GRACE_TIME", 300),
    )
    if not 0 <= sync.sync_day_of_week <= 6:
        raise ConfigurationError("SYNC_DAY_OF_WEEK must be between 0 (Sunday) and 6")

    min_conf_raw = os.environ.get("MATCH_MIN_CONFIDENCE", "")
    try:
        min_confidence = (
            MatchConfidence[min_conf_raw.strip().upper()] if min_conf_raw else MatchConfidence.MEDIUM
        )
    except KeyError:
        raise ConfigurationError(f"Unknown MATCH_MIN_CONFIDENCE: {min_conf_raw!r}")
    matching = MatchingConfig(
        min_confidence=min_confidence,
        create_conflicts=_env_bool("MATCH_CREATE_CONFLICTS", True),
    )

    # Azure DevOps (optional)
    azure_devops = None
    azdo_org = os.environ.get("AZDO_ORG_URL")
    azdo_project = os.environ.get("AZDO_PROJECT")
    azdo_pat = os.environ.get("AZDO_PAT")
    if azdo_org and azdo_project and azdo_pat:
        azure_devops = AzureDevOpsConfig(
            org_url=azdo_org.rstrip("/"),
            project=azdo_project,
            pat=azdo_pat,
            commit_history_days=_env_int("AZDO_COMMIT_HISTORY_DAYS", 365),
        )

    # ServiceNow (optional)
    servicenow = None
    sn_url = os.environ.get("SERVICENOW_INSTANCE_URL")
    sn_user = os.environ.get("SERVICENOW_USER")
    sn_password = os.environ.get("SERVICENOW_PASSWORD")
    if sn_url and sn_user and sn_password:
        servicenow = ServiceNowConfig(
            instance_url=sn_url.rstrip("/"),
            user=sn_user,
            password=sn_password,
            table=os.environ.get("SERVICENOW_TABLE", "cmdb_ci_business_app"),
        )

    # SharePoint (optional)
    sharepoint = None
    sp_site = os.environ.get("SHAREPOINT_SITE_ID")
    sp_token = os.environ.get("SHAREPOINT_TOKEN")
    if sp_site and sp_token:
        sharepoint = SharePointConfig(
            site_id=sp_site,
            token=sp_token,
            library=os.environ.get("SHAREPOINT_LIBRARY", "Applications"),
        )

    # IIS request-log warehouse (optional)
    iis_database = None
    iis_url = os.environ.get("IIS_DATABASE_URL")
    if iis_url:
        iis_database = IisDatabaseConfig(
            url=iis_url,
            lookback_days=_env_int("IIS_LOOKBACK_DAYS", 30),
        )

    return AppConfig(
        database=database,
        sync=sync,
        matching=matching,
        azure_devops=azure_devops,
        servicenow=servicenow,
        sharepoint=sharepoint,
        iis_database=iis_database,
    )

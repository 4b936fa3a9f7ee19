"""Source adapters and the registry used to build them from configuration."""

from __future__ import annotations

import importlib
import logging
from typing import Optional

from lifecycle_sync.adapters.base import (
    DocumentationSource,
    HttpAdapter,
    RepositorySource,
    RoleSource,
    SourceAdapter,
    UsageSource,
    classify_error,
)
from lifecycle_sync.config import AppConfig
from lifecycle_sync.models import DataSourceType

logger = logging.getLogger("lifecycle_sync.adapters")

ADAPTER_REGISTRY: dict[DataSourceType, tuple[str, str, str]] = {
    # source -> (config_attr, module_path, class_name)
    DataSourceType.AZURE_DEVOPS: ("azure_devops", "lifecycle_sync.adapters.azure_devops", "AzureDevOpsAdapter"),
    DataSourceType.SERVICENOW: ("servicenow", "lifecycle_sync.adapters.servicenow", "ServiceNowAdapter"),
    DataSourceType.SHAREPOINT: ("sharepoint", "lifecycle_sync.adapters.sharepoint", "SharePointAdapter"),
    DataSourceType.IIS_DATABASE: ("iis_database", "lifecycle_sync.adapters.iis_database", "IisUsageAdapter"),
}


def build_adapter(source: DataSourceType, config: AppConfig) -> Optional[SourceAdapter]:
    """Instantiate the adapter for a source. Returns None if unconfigured."""
    config_attr, module_path, class_name = ADAPTER_REGISTRY[source]
    source_config = getattr(config, config_attr, None)
    if not source_config:
        logger.warning("%s not configured, skipping", source.value, extra={"source": source.value})
        return None
    module = importlib.import_module(module_path)
    cls = getattr(module, class_name)
    return cls(source_config)


def build_adapters(config: AppConfig) -> dict[DataSourceType, SourceAdapter]:
    adapters: dict[DataSourceType, SourceAdapter] = {}
    for source in DataSourceType:
        adapter = build_adapter(source, config)
        if adapter is not None:
            adapters[source] = adapter
    return adapters


__all__ = [
    "ADAPTER_REGISTRY",
    "DocumentationSource",
    "HttpAdapter",
    "RepositorySource",
    "RoleSource",
    "SourceAdapter",
    "UsageSource",
    "build_adapter",
    "build_adapters",
    "classify_error",
]

"""ServiceNow CMDB role source: business applications and their role occupants."""

from __future__ import annotations

import logging
from typing import Any, Optional

import requests

from lifecycle_sync.adapters.base import HttpAdapter, RoleSource
from lifecycle_sync.config import ServiceNowConfig
from lifecycle_sync.models import Application, ConnectionResult, RoleAssignment, SourceResult

logger = logging.getLogger("lifecycle_sync.adapters.servicenow")

PAGE_SIZE = 500

# CMDB field -> role name
ROLE_FIELDS = {
    "owned_by": "Owner",
    "managed_by": "Technical Lead",
    "u_business_owner": "Business Owner",
    "u_product_manager": "Product Manager",
    "supported_by": "Support",
}

REPOSITORY_FIELDS = ("u_repository_url", "u_source_repository")


def _display(value: Any) -> str:
    """Reference fields come back as {"display_value": ...} or plain strings."""
    if isinstance(value, dict):
        return (value.get("display_value") or "").strip()
    return (value or "").strip()


def parse_application(row: dict) -> Application:
    assignments = []
    for field_name, role in ROLE_FIELDS.items():
        # Multiple occupants are semicolon separated in some instances.
        for person in _display(row.get(field_name)).split(";"):
            if person.strip():
                assignments.append(RoleAssignment(role=role, person=person.strip()))
    repo_url = next((_display(row.get(f)) for f in REPOSITORY_FIELDS if _display(row.get(f))), None)
    return Application(
        id=_display(row.get("sys_id")) or _display(row.get("number")),
        name=_display(row.get("name")),
        repository_url=repo_url,
        role_assignments=tuple(assignments),
    )


class ServiceNowAdapter(RoleSource, HttpAdapter):
    def __init__(self, config: ServiceNowConfig, session: Optional[requests.Session] = None) -> None:
        HttpAdapter.__init__(self, session)
        self.config = config
        self._table_url = f"{config.instance_url}/api/now/table/{config.table}"
        self._session.auth = (config.user, config.password)
        self._session.headers.update({"Accept": "application/json"})

    async def test_connection(self) -> ConnectionResult:
        def probe() -> Optional[str]:
            self._request("GET", self._table_url, params={"sysparm_limit": "1"})
            return None
        return await self._timed_probe(probe)

    async def list_applications(self) -> SourceResult[list[Application]]:
        return await self._call(self._list_applications)

    def _list_applications(self) -> list[Application]:
        fields = ["sys_id", "number", "name", *ROLE_FIELDS, *REPOSITORY_FIELDS]
        rows = self._get_paginated(
            self._table_url,
            {
                "sysparm_display_value": "true",
                "sysparm_exclude_reference_link": "true",
                "sysparm_fields": ",".join(fields),
                "sysparm_limit": str(PAGE_SIZE),
            },
            items_key="result",
        )
        apps = [parse_application(r) for r in rows]
        apps = [a for a in apps if a.id and a.name]
        logger.info("Fetched %d applications", len(apps), extra={"records": len(apps)})
        return apps

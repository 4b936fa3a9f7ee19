"""SharePoint documentation source via Microsoft Graph: one folder per application."""

from __future__ import annotations

import logging
from typing import Optional

import requests

from lifecycle_sync.adapters.base import DocumentationSource, HttpAdapter
from lifecycle_sync.config import SharePointConfig
from lifecycle_sync.models import ConnectionResult, DocumentationFolder, SourceResult

logger = logging.getLogger("lifecycle_sync.adapters.sharepoint")


class SharePointAdapter(DocumentationSource, HttpAdapter):
    def __init__(self, config: SharePointConfig, session: Optional[requests.Session] = None) -> None:
        HttpAdapter.__init__(self, session)
        self.config = config
        self._base = config.graph_base_url.rstrip("/")
        self._session.headers.update({
            "Authorization": f"Bearer {config.token}",
            "Accept": "application/json",
        })

    async def test_connection(self) -> ConnectionResult:
        def probe() -> Optional[str]:
            self._get_json(f"{self._base}/sites/{self.config.site_id}")
            return None
        return await self._timed_probe(probe)

    def _drive_id(self) -> str:
        drives = self._get_paginated(f"{self._base}/sites/{self.config.site_id}/drives")
        for drive in drives:
            if (drive.get("name") or "").lower() == self.config.library.lower():
                return drive["id"]
        raise KeyError(f"Document library {self.config.library!r} not found")

    async def list_documentation(self) -> SourceResult[list[DocumentationFolder]]:
        return await self._call(self._list_documentation)

    def _list_documentation(self) -> list[DocumentationFolder]:
        drive_id = self._drive_id()
        children = self._get_paginated(f"{self._base}/drives/{drive_id}/root/children")
        folders: list[DocumentationFolder] = []
        for item in children:
            if "folder" not in item:
                continue
            documents = self._get_paginated(
                f"{self._base}/drives/{drive_id}/items/{item['id']}/children"
            )
            folders.append(DocumentationFolder(
                application_name=item["name"],
                folder_path=item.get("webUrl") or f"/{self.config.library}/{item['name']}",
                documents=tuple(d["name"] for d in documents if "file" in d),
            ))
        logger.info("Found %d documentation folders", len(folders), extra={"records": len(folders)})
        return folders

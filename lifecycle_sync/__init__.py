"""Application lifecycle data synchronization.

Pulls application facts from Azure DevOps, SharePoint, ServiceNow and the
IIS request-log warehouse, tracks every pull as an auditable job, detects
cross-source conflicts and resolves free-text people against the identity
directory.
"""

__version__ = "0.1.0"

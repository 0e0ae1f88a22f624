"""
Service layer.
Wires storage, the QuickBooks client and the sync core for routers and workers.
"""

from qbosync.services.sync_service import SyncServices, build_sync_services, get_sync_services

__all__ = ["SyncServices", "build_sync_services", "get_sync_services"]

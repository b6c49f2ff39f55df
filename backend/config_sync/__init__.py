"""
Versioned configuration documents kept in the remote config service.

Usage:
    sync = VersionedConfigSync("offers:promotion:iap:store-translated", AsyncSessionLocal, ConfigServiceClient())
    state = await sync.read()
    await sync.push(document, Env.STG, actor="ops@example.com", expected_state=state)
"""

from config_sync.versioned_config import ConfigState, ConfigStatus, VersionedConfigSync

__all__ = ["ConfigState", "ConfigStatus", "VersionedConfigSync"]

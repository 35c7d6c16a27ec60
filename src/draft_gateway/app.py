"""Application context assembly."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from draft_gateway.auth.identity import IdentityProvider, build_identity_provider
from draft_gateway.config import Settings, load_settings
from draft_gateway.gateway.service import DraftGateway
from draft_gateway.policy.loader import load_policy
from draft_gateway.policy.models import PolicyConfig
from draft_gateway.storage.db import SqliteStore


@dataclass
class AppContext:
    """Application-wide dependency container.

    Built once at startup; request handlers only read from it.
    """

    settings: Settings
    store: SqliteStore
    policy_config: PolicyConfig
    identity_provider: IdentityProvider
    gateway: DraftGateway


def build_app_context(
    settings: Settings,
    *,
    policy_config: PolicyConfig | None = None,
    store: SqliteStore | None = None,
    identity_provider: IdentityProvider | None = None,
) -> AppContext:
    """Assemble a context from explicit settings (tests pass their own parts)."""
    policy_config = policy_config or load_policy(settings.policy.path)
    store = store or SqliteStore(settings.storage.sqlite_path, wal=settings.storage.sqlite_wal)
    return AppContext(
        settings=settings,
        store=store,
        policy_config=policy_config,
        identity_provider=identity_provider or build_identity_provider(settings.auth),
        gateway=DraftGateway(store=store, settings=settings, policy_config=policy_config),
    )


@lru_cache(maxsize=1)
def get_app_context() -> AppContext:
    """Get or create the process-wide application context."""
    return build_app_context(load_settings())

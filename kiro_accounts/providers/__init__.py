"""Provider clients: one per identity provider kind, sharing a single contract."""

from kiro_accounts.providers.base import (
    AuthorizationHandle,
    ProviderClient,
    ProviderKind,
    build_provider_clients,
)

__all__ = [
    "AuthorizationHandle",
    "ProviderClient",
    "ProviderKind",
    "build_provider_clients",
]

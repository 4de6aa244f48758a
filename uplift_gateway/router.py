"""Routing: resolve a provider name to its adapter.

The registry is built once at startup from the static provider descriptors.
Lookup is an exact, case-insensitive match; there is no fallback to another
provider.
"""

from typing import Dict, Iterator, List, Optional

import httpx

from uplift_gateway.config import GatewayConfig
from uplift_gateway.errors import UnsupportedProviderError
from uplift_gateway.models import ProviderStatus
from uplift_gateway.provider import ADAPTER_KINDS, ProviderAdapter


class ProviderRegistry:
    """Immutable mapping of lower-cased provider names to adapters."""

    def __init__(self, adapters: Dict[str, ProviderAdapter]) -> None:
        self._adapters = {name.lower(): adapter for name, adapter in adapters.items()}

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._adapters

    def __iter__(self) -> Iterator[str]:
        return iter(self._adapters)

    def resolve(self, name: str) -> ProviderAdapter:
        """Return the adapter registered under ``name``.

        Raises:
            UnsupportedProviderError: If no adapter is registered.
        """
        adapter = self._adapters.get(name.lower())
        if adapter is None:
            raise UnsupportedProviderError(
                detail="Unknown provider '{}'. Available: {}".format(
                    name, ", ".join(sorted(self._adapters)) or "(none)"
                )
            )
        return adapter

    def statuses(self) -> List[ProviderStatus]:
        return [
            ProviderStatus(
                name=name,
                configured=adapter.configured,
                status="configured" if adapter.configured else "not_configured",
            )
            for name, adapter in sorted(self._adapters.items())
        ]


def build_registry(
    config: GatewayConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProviderRegistry:
    """Create one adapter per configured provider.

    Args:
        config: The loaded gateway configuration.
        transport: Optional httpx transport shared by all adapters.
    """
    adapters: Dict[str, ProviderAdapter] = {}
    for name, provider in config.providers.items():
        adapter_cls = ADAPTER_KINDS[provider.kind]
        adapters[name] = adapter_cls(
            provider,
            timeout=config.provider_timeout_seconds,
            transport=transport,
        )
    return ProviderRegistry(adapters)

"""Provider registry: explicit binding of resource kinds to state providers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from importlib import import_module
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from ..core.errors import ConfigError, UnregisteredKind
from ..core.resources import Resource, ResourceKind
from ..core.schema import AttributeSchema
from .base import StateProvider

if TYPE_CHECKING:  # pragma: no cover
    from ..core.config import AppConfig

# -------- Provider implementations (closed set) ------------------------------

@dataclass(frozen=True)
class ProviderSpec:
    name: str               # value used in providers.kinds
    help: str
    module: str             # module path
    class_name: str         # class symbol in module

    def load_class(self):
        mod = import_module(self.module)
        return getattr(mod, self.class_name)


PROVIDERS: Dict[str, ProviderSpec] = {
    # Directory objects, GPOs, shares, services through the management gateway
    "gateway": ProviderSpec(
        name="gateway",
        help="Windows management gateway (HTTP/JSON)",
        module="fleetsync.providers.gateway",
        class_name="GatewayProvider",
    ),
    # Registry values in per-target YAML hives
    "registry_file": ProviderSpec(
        name="registry_file",
        help="Registry values stored in local YAML hive files",
        module="fleetsync.providers.registry_file",
        class_name="RegistryFileProvider",
    ),
}


def get_spec(name: str) -> ProviderSpec:
    try:
        return PROVIDERS[name]
    except KeyError:
        raise ConfigError(f"Unknown provider '{name}' (known: {', '.join(sorted(PROVIDERS))})") from None


class ProviderRegistry:
    """kind -> StateProvider for one run. Nothing is discovered at runtime."""

    def __init__(self, providers: Optional[Iterable[StateProvider]] = None) -> None:
        self._by_kind: Dict[ResourceKind, StateProvider] = {}
        for p in providers or []:
            self.register(p)

    def register(self, provider: StateProvider) -> None:
        if provider.kind in self._by_kind:
            raise ConfigError(f"A provider is already registered for kind '{provider.kind.value}'")
        self._by_kind[provider.kind] = provider

    def for_kind(self, kind: ResourceKind) -> StateProvider:
        try:
            return self._by_kind[kind]
        except KeyError:
            raise UnregisteredKind(kind.value) from None

    def ensure_registered(self, kinds: Iterable[ResourceKind]) -> None:
        for kind in kinds:
            self.for_kind(kind)

    def check_resources(self, resources: Iterable[Resource]) -> None:
        """Let each provider reject declarations it could never converge."""
        for res in resources:
            self.for_kind(res.kind).check(res)

    def use_schema(self, schema: AttributeSchema) -> None:
        for provider in self._by_kind.values():
            provider.schema = schema

    @property
    def kinds(self) -> List[ResourceKind]:
        return sorted(self._by_kind, key=lambda k: k.value)

    @classmethod
    def from_config(
        cls,
        cfg: "AppConfig",
        *,
        kinds: Optional[Iterable[ResourceKind]] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> "ProviderRegistry":
        """
        Instantiate the configured provider for each kind in `kinds` (all
        configured kinds when omitted). Per-kind overrides refine the policy.
        """
        wanted = set(kinds) if kinds is not None else None
        registry = cls()
        for kind_name, provider_name in sorted(cfg.providers.kinds.items()):
            try:
                kind = ResourceKind.parse(kind_name)
            except ValueError as exc:
                raise ConfigError(f"providers.kinds: {exc}") from exc
            if wanted is not None and kind not in wanted:
                continue
            provider_cls = get_spec(str(provider_name)).load_class()
            provider = provider_cls.from_config(kind, cfg, logger=logger)
            provider.policy = provider.policy.with_overrides(cfg.providers.overrides.get(kind.value))
            registry.register(provider)
        return registry

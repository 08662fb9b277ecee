"""Process-wide registry of kernel adapters, keyed by adapter key."""

from __future__ import annotations

import logging

from gpu_runtime.errors import ConfigurationError
from kernel_adapters.adapter import KernelAdapter

logger = logging.getLogger(__name__)

_ADAPTER_REGISTRY: dict[str, type[KernelAdapter]] = {}


def _check_unique_names(adapter_cls: type[KernelAdapter]) -> None:
    seen: set[str] = set()
    for param in adapter_cls().parameter_details():
        if param.name in seen:
            raise ConfigurationError(
                f"Kernel adapter '{adapter_cls.key}' declares parameter '{param.name}' more than once"
            )
        seen.add(param.name)


def register_adapter(adapter_cls: type[KernelAdapter] | None = None, *, override: bool = False):
    """Register a KernelAdapter subclass under its ``key``.

    Usable as ``@register_adapter`` or ``@register_adapter(override=True)``.
    Registering a key twice is an error unless ``override`` is set.
    """

    def register(cls: type[KernelAdapter]) -> type[KernelAdapter]:
        key = getattr(cls, "key", None)
        if not key:
            raise ConfigurationError(f"Kernel adapter class {cls.__name__} has no key")
        if key in _ADAPTER_REGISTRY and not override:
            raise ConfigurationError(f"A kernel adapter is already registered for key '{key}'")
        _check_unique_names(cls)
        _ADAPTER_REGISTRY[key] = cls
        logger.debug("Registered kernel adapter %s for key '%s'", cls.__name__, key)
        return cls

    if adapter_cls is not None:
        return register(adapter_cls)
    return register


def unregister_adapter(key: str) -> None:
    _ADAPTER_REGISTRY.pop(key, None)


def can_produce_adapter(key: str) -> bool:
    return key in _ADAPTER_REGISTRY


def produce_adapter(key: str) -> KernelAdapter:
    """Instantiate the adapter registered for ``key``."""
    adapter_cls = _ADAPTER_REGISTRY.get(key)
    if adapter_cls is None:
        raise ConfigurationError(f"No kernel adapter is registered for key '{key}'")
    return adapter_cls()


def registered_keys() -> list[str]:
    return sorted(_ADAPTER_REGISTRY)

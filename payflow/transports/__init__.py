"""Event transports and the factory that picks one from configuration."""

from __future__ import annotations

import os
from typing import Callable, Dict, Optional

from ..config import PayflowConfig, TransportConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def _redis(settings: TransportConfig) -> BaseTransport:
    from .redis import RedisTransport

    return RedisTransport.from_config(settings.redis)


_BACKENDS: Dict[str, Callable[[TransportConfig], BaseTransport]] = {
    "inmemory": lambda settings: InMemoryTransport(),
    "redis": _redis,
}


def get_transport(
    backend: Optional[str] = None, config: Optional[PayflowConfig] = None
) -> BaseTransport:
    """Build the transport named by ``backend``.

    ``PAYFLOW_TRANSPORT`` overrides the configured backend so a worker can be
    pointed at a broker without editing ``config.yaml``.
    """
    settings = (config or load_config()).transport
    name = (backend or os.getenv("PAYFLOW_TRANSPORT") or settings.backend).lower()
    build = _BACKENDS.get(name)
    if build is None:
        raise ValueError(
            f"Unsupported transport backend {name!r}; expected one of {sorted(_BACKENDS)}"
        )
    return build(settings)


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]

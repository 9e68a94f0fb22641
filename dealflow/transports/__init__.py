"""Transport selection."""

from __future__ import annotations

import logging
import os
from typing import Optional

from ..config import DealflowConfig, load_config
from .base import METRICS_TOPIC, RUNS_TOPIC, BaseTransport
from .inmemory import InMemoryTransport

logger = logging.getLogger(__name__)


def get_transport(
    backend: Optional[str] = None, config: Optional[DealflowConfig] = None
) -> BaseTransport:
    """Build the transport named by ``backend``, ``DEALFLOW_TRANSPORT`` or the config.

    Raises:
        ValueError: For a backend other than ``inmemory`` or ``redis``.
    """
    config = config or load_config()
    name = (backend or os.getenv("DEALFLOW_TRANSPORT") or config.transport.backend).lower()

    if name == "inmemory":
        transport: BaseTransport = InMemoryTransport()
    elif name == "redis":
        # Imported lazily so the in-memory path works without a Redis server.
        from .redis import RedisTransport

        transport = RedisTransport.from_config(config.transport.redis)
    else:
        raise ValueError(f"Unsupported transport backend: {name}")

    logger.debug(f"Using {name} transport")
    return transport


__all__ = [
    "BaseTransport",
    "InMemoryTransport",
    "METRICS_TOPIC",
    "RUNS_TOPIC",
    "get_transport",
]

"""Outbound adapters - Implementations of outbound port interfaces.

Provides the host platform seam, the built-in engine adapters and the
HTTP and local-directory binary repositories.
"""

from db_sandbox.adapters.outbound.engine_adapters import (
    CommandEngineAdapter,
    EngineAdapterRegistry,
    builtin_adapters,
    default_adapter_registry,
)
from db_sandbox.adapters.outbound.http_binary_repository import HttpBinaryRepository
from db_sandbox.adapters.outbound.local_binary_repository import LocalArchiveRepository
from db_sandbox.adapters.outbound.platform import PosixPlatform, WindowsPlatform, detect_platform

__all__ = [
    # Engines
    "CommandEngineAdapter",
    "EngineAdapterRegistry",
    "builtin_adapters",
    "default_adapter_registry",
    # Binary repositories
    "HttpBinaryRepository",
    "LocalArchiveRepository",
    # Platform
    "PosixPlatform",
    "WindowsPlatform",
    "detect_platform",
]

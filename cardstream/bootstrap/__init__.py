"""
bootstrap/ - Bootstrap Layer

Configuration loading and logging setup. The command line lives in
bootstrap.entrypoints.
"""

from .config import (
    CardStreamConfig,
    EngineConfig,
    RevealConfig,
    SessionConfig,
    APIConfig,
    LoggingConfig,
    load_config,
    get_config,
)


__all__ = [
    "CardStreamConfig",
    "EngineConfig",
    "RevealConfig",
    "SessionConfig",
    "APIConfig",
    "LoggingConfig",
    "load_config",
    "get_config",
]

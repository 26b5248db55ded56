"""
bootstrap/config.py - Application configuration

Provides configuration loading from files, environment variables, and
defaults. Core components (engine, state machine, session) receive the
relevant sub-config explicitly at construction; only the host layer
(API, CLI) uses the module level load_config()/get_config().
"""

from __future__ import annotations
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional
from pathlib import Path
import os
import json
import logging

logger = logging.getLogger("bootstrap.config")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class EngineConfig:
    """Formula engine configuration."""

    max_decimals: int = 2  # Display precision when a formula declares none
    strict_fields: bool = False  # Unset [field:x] is an error instead of 0
    compute_missing_upstream: bool = True  # Compute referenced formulas on demand
    max_depth: int = 16  # Nested formula recursion guard
    enable_overrides: bool = True  # override_<formula> fields replace results
    debounce_seconds: float = 0.0  # Delay recalculation after field changes

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            max_decimals=int(os.getenv("CARDSTREAM_MAX_DECIMALS", "2")),
            strict_fields=_env_bool("CARDSTREAM_STRICT_FIELDS", "false"),
            compute_missing_upstream=_env_bool("CARDSTREAM_COMPUTE_UPSTREAM", "true"),
            max_depth=int(os.getenv("CARDSTREAM_MAX_DEPTH", "16")),
            enable_overrides=_env_bool("CARDSTREAM_OVERRIDES", "true"),
            debounce_seconds=float(os.getenv("CARDSTREAM_DEBOUNCE_SECONDS", "0")),
        )


@dataclass
class RevealConfig:
    """Card reveal and activation configuration."""

    default_delay_seconds: float = 3.0  # after_delay without delay_seconds
    activation_policy: str = "demote_to_unlocked"
    max_cascade_length: int = 200

    @classmethod
    def from_env(cls) -> "RevealConfig":
        return cls(
            default_delay_seconds=float(os.getenv("CARDSTREAM_REVEAL_DELAY", "3")),
            activation_policy=os.getenv("CARDSTREAM_ACTIVATION_POLICY", "demote_to_unlocked"),
            max_cascade_length=int(os.getenv("CARDSTREAM_MAX_CASCADE", "200")),
        )


@dataclass
class SessionConfig:
    """Session behaviour configuration."""

    embedded_mode: bool = False  # Offline widget: content injected, no persistence hook
    max_sessions: int = 1000
    max_event_history: int = 100
    required_message: str = "Tämä kenttä on pakollinen"

    @classmethod
    def from_env(cls) -> "SessionConfig":
        return cls(
            embedded_mode=_env_bool("CARDSTREAM_EMBEDDED", "false"),
            max_sessions=int(os.getenv("CARDSTREAM_MAX_SESSIONS", "1000")),
            max_event_history=int(os.getenv("CARDSTREAM_EVENT_HISTORY", "100")),
            required_message=os.getenv("CARDSTREAM_REQUIRED_MESSAGE", cls.required_message),
        )


@dataclass
class APIConfig:
    """API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    enable_docs: bool = True
    docs_url: str = "/docs"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    content_path: Optional[str] = None  # Content bundle JSON served to new sessions

    @classmethod
    def from_env(cls) -> "APIConfig":
        cors = os.getenv("CARDSTREAM_API_CORS_ORIGINS", "*")
        return cls(
            host=os.getenv("CARDSTREAM_API_HOST", "0.0.0.0"),
            port=int(os.getenv("CARDSTREAM_API_PORT", "8000")),
            enable_docs=_env_bool("CARDSTREAM_API_ENABLE_DOCS", "true"),
            docs_url=os.getenv("CARDSTREAM_API_DOCS_URL", "/docs"),
            cors_origins=cors.split(",") if cors else ["*"],
            content_path=os.getenv("CARDSTREAM_CONTENT_PATH"),
        )


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    log_file: Optional[str] = None
    json_logs: bool = False

    @classmethod
    def from_env(cls) -> "LoggingConfig":
        return cls(
            level=os.getenv("CARDSTREAM_LOG_LEVEL", "INFO"),
            log_file=os.getenv("CARDSTREAM_LOG_FILE"),
            json_logs=_env_bool("CARDSTREAM_JSON_LOGS", "false"),
        )


@dataclass
class CardStreamConfig:
    """Root configuration."""

    environment: str = "development"
    debug: bool = False
    version: str = "1.0.0"

    engine: EngineConfig = field(default_factory=EngineConfig)
    reveal: RevealConfig = field(default_factory=RevealConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    api: APIConfig = field(default_factory=APIConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Additional settings
    settings: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "CardStreamConfig":
        """Create configuration from environment variables."""
        return cls(
            environment=os.getenv("CARDSTREAM_ENVIRONMENT", "development"),
            debug=_env_bool("CARDSTREAM_DEBUG", "false"),
            engine=EngineConfig.from_env(),
            reveal=RevealConfig.from_env(),
            session=SessionConfig.from_env(),
            api=APIConfig.from_env(),
            logging=LoggingConfig.from_env(),
        )

    @classmethod
    def from_file(cls, filepath: str) -> "CardStreamConfig":
        """JSON file over environment defaults. A missing file is not an error."""
        path = Path(filepath)
        if not path.is_file():
            logger.warning(f"No config at {filepath}, falling back to environment")
            return cls.from_env()
        return cls.from_dict(json.loads(path.read_text(encoding="utf-8")))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CardStreamConfig":
        """Environment defaults overridden by the given values; unknown keys are ignored."""
        config = cls.from_env()
        config.environment = data.get("environment", config.environment)
        config.debug = data.get("debug", config.debug)

        for section in _SECTIONS:
            target = getattr(config, section)
            for key, value in data.get(section, {}).items():
                if hasattr(target, key):
                    setattr(target, key, value)
                else:
                    logger.debug(f"Ignoring unknown setting {section}.{key}")

        config.settings.update(data.get("settings", {}))
        return config

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "environment": self.environment,
            "debug": self.debug,
            "version": self.version,
        }
        for section in _SECTIONS:
            data[section] = asdict(getattr(self, section))
        # CORS origins and the content path stay out of dumps
        data["api"] = {k: data["api"][k] for k in ("host", "port", "enable_docs")}
        return data


_SECTIONS = ("engine", "reveal", "session", "api", "logging")

# Searched in order when load_config() gets no path
_SEARCH_PATHS = (
    "cardstream.json",
    "config/cardstream.json",
    "~/.cardstream/config.json",
)

_config: Optional[CardStreamConfig] = None


def load_config(filepath: str = None) -> CardStreamConfig:
    """
    Load and cache the application configuration.

    Without ``filepath`` the first existing file from the search paths is
    used, then the environment.
    """
    global _config

    if filepath is None:
        found = (Path(p).expanduser() for p in _SEARCH_PATHS)
        filepath = next((str(p) for p in found if p.is_file()), None)

    if filepath is None:
        _config = CardStreamConfig.from_env()
    else:
        logger.info(f"Reading config file {filepath}")
        _config = CardStreamConfig.from_file(filepath)

    logger.info(f"Config ready ({_config.environment})")
    return _config


def get_config() -> CardStreamConfig:
    """The cached configuration; loaded on first use."""
    if _config is None:
        return load_config()
    return _config

"""Configuration for quotaflow: .env, environment variables and a YAML file.

The YAML file defaults to ~/.quotaflow/config.yaml. Nested sections are
read with dotted keys such as ``resilience.max_retries``.

Loading is explicit: the composition root calls ``load_configuration()``.
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml
from dotenv import load_dotenv

from quotaflow.domain.models.common import MEDIA_SERVICE, TEXT_SERVICE
from quotaflow.infrastructure.resilience import rate_limiter

logger = logging.getLogger(__name__)

# --- Configuration Constants ---
DEFAULT_CONFIG_DIR = Path.home() / ".quotaflow"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
ENV_FILE_NAME = ".env"
ENV_PREFIX = "QUOTAFLOW_"

# Credential discovery
MAX_NUMBERED_KEYS = 10
MIN_CREDENTIAL_LENGTH = 10  # Shorter values are placeholders, not secrets
DEFAULT_ENV_NAMES = {
    TEXT_SERVICE: "TEXT_API_KEY",
    MEDIA_SERVICE: "MEDIA_API_KEY",
}

# --- Global Configuration Store ---
_config: Dict[str, Any] = {}
_test_config: Dict[str, Any] = {}  # For testing purposes
_loaded = False


def _flatten(section: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Turns nested YAML mappings into dotted keys; lists and scalars stay values."""
    flat: Dict[str, Any] = {}
    for key, value in section.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten(value, f"{dotted}."))
        else:
            flat[dotted] = value
    return flat


def load_configuration(
    config_file: Path = DEFAULT_CONFIG_FILE,
    env_file: Optional[Path] = None,
    reload: bool = False,
) -> None:
    """Reads the YAML file into memory and applies the .env file.

    A missing or unreadable YAML file leaves only environment values and
    defaults. The .env file never overrides variables already exported.

    Args:
        config_file: YAML file to read.
        env_file: Explicit .env path; when None, the nearest one at or above
            the working directory is used.
        reload: Forget values from an earlier call and read again.
    """
    global _config, _loaded
    if _loaded and not reload:
        logger.debug("Configuration was loaded earlier; skipping")
        return

    _config = {}

    config_file = Path(config_file)
    if config_file.exists():
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                yaml_config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Could not read YAML config {config_file}: {e}")
            yaml_config = None
        if isinstance(yaml_config, dict):
            _config.update(_flatten(yaml_config))
            logger.info(f"YAML config read from {config_file}")
        elif yaml_config is not None:
            logger.warning(f"Ignoring {config_file}: top level is not a mapping")
    else:
        logger.debug(f"No YAML config at {config_file}")

    dotenv_path = env_file or find_dotenv_path()
    if dotenv_path:
        # override=False: real environment variables take precedence
        if load_dotenv(dotenv_path=dotenv_path, override=False):
            logger.info(f".env applied from {dotenv_path}")
    else:
        logger.debug("No .env file in the working directory or its parents")

    _loaded = True
    logger.info(f"Configuration ready ({len(_config)} YAML keys)")


def _coerce(value: str) -> Any:
    """Converts common string forms from the environment."""
    lowered = value.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    try:
        if "." in value:
            return float(value)
        return int(value)
    except (ValueError, TypeError):
        return value


def env_names_for(key: str) -> List[str]:
    """Environment variables consulted for a dotted key, in order."""
    normalized = key.upper().replace(".", "_")
    names = [f"{ENV_PREFIX}{normalized}"]
    if "." not in key:
        names.append(key.upper())
    return names


def get_config(key: str, default: Any = None) -> Any:
    """Resolves a dotted configuration key.

    Test overrides win, then the environment (``QUOTAFLOW_RESILIENCE_MAX_RETRIES``
    for ``resilience.max_retries``, plus the bare upper-case name for flat keys),
    then the loaded YAML, then ``default``. Environment strings are coerced to
    bool, int or float where they parse as one.
    """
    if key in _test_config:
        return _test_config[key]

    for env_key in env_names_for(key):
        if env_key in os.environ:
            return _coerce(os.environ[env_key])

    if key in _config:
        return _config[key]

    logger.debug(f"Config key {key!r} unset, using default {default!r}")
    return default


def find_dotenv_path() -> Optional[Path]:
    """Searches for the .env file upwards from the current directory."""
    cwd = Path.cwd()
    for path in [cwd] + list(cwd.parents):
        env_path = path / ENV_FILE_NAME
        if env_path.is_file():
            return env_path
    return None


def set_config_for_testing(config_dict: Dict[str, Any]) -> None:
    """Overrides keys for the current test; environment and YAML are ignored for them."""
    _test_config.update(config_dict)
    logger.debug(f"Test overrides set for: {sorted(config_dict)}")


def clear_test_config() -> None:
    """Drops every test override."""
    _test_config.clear()
    logger.debug("Test overrides cleared")


# --- Credential Discovery ---

def discover_credentials(base_name: str, extra: Optional[Iterable[Any]] = None) -> List[str]:
    """Collects the credentials of one service from the environment.

    Reads ``BASE`` then ``BASE_1`` .. ``BASE_10``, then any ``extra`` values
    (e.g. a YAML list). Values are stripped; anything of 10 characters or
    fewer is treated as a placeholder. Duplicates are dropped, first
    occurrence wins.

    Args:
        base_name: Environment variable prefix, e.g. ``MEDIA_API_KEY``.
        extra: Additional candidate values appended after the environment.

    Returns:
        The de-duplicated credentials in discovery order.
    """
    candidates: List[Any] = [os.getenv(base_name)]
    candidates.extend(os.getenv(f"{base_name}_{i}") for i in range(1, MAX_NUMBERED_KEYS + 1))
    candidates.extend(extra or [])

    credentials: List[str] = []
    for raw in candidates:
        if raw is None:
            continue
        value = str(raw).strip()
        if len(value) <= MIN_CREDENTIAL_LENGTH:
            if value:
                logger.debug(f"Ignoring placeholder value for {base_name} (too short)")
            continue
        if value not in credentials:
            credentials.append(value)

    logger.info(f"Discovered {len(credentials)} credential(s) for {base_name}")
    return credentials


def credentials_for_service(service: str) -> List[str]:
    """Discovers credentials using ``services.<service>.env_name`` and ``.api_keys``."""
    env_name = get_config(f"services.{service}.env_name", DEFAULT_ENV_NAMES.get(service, f"{service.upper()}_API_KEY"))
    extra = get_config(f"services.{service}.api_keys") or []
    if isinstance(extra, str):
        extra = extra.split(",")
    return discover_credentials(str(env_name), extra)


# --- Typed Views ---

def _typed(value: Any, default: Any) -> Any:
    if default is None or value is None:
        return value
    try:
        return type(default)(value)
    except (TypeError, ValueError):
        logger.warning(f"Invalid config value {value!r}, using default {default!r}")
        return default


@dataclass(frozen=True)
class ResilienceSettings:
    """Retry, blocking and timeout tunables (``resilience.*``)."""
    block_timeout_s: float = 60.0
    max_retries: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    max_total_attempts: int = 10
    call_timeout_s: float = 60.0
    model_switch_delay_s: float = 1.0

    @classmethod
    def from_config(cls) -> "ResilienceSettings":
        return cls(**{
            f.name: _typed(get_config(f"resilience.{f.name}", f.default), f.default)
            for f in fields(cls)
        })


@dataclass(frozen=True)
class PollingSettings:
    """Task polling cadence and deadline (``polling.*``)."""
    interval_s: float = 3.0
    timeout_s: float = 180.0

    @classmethod
    def from_config(cls) -> "PollingSettings":
        return cls(**{
            f.name: _typed(get_config(f"polling.{f.name}", f.default), f.default)
            for f in fields(cls)
        })


@dataclass(frozen=True)
class RateLimitSettings:
    """Admission windows for one service (``rate_limits.<service>.*``)."""
    max_per_second: int
    burst_max: int
    burst_window_s: float

    @classmethod
    def defaults_for(cls, service: str) -> "RateLimitSettings":
        if service == TEXT_SERVICE:
            return cls(rate_limiter.TEXT_MAX_PER_SECOND, rate_limiter.TEXT_BURST_MAX, rate_limiter.TEXT_BURST_WINDOW_S)
        return cls(rate_limiter.MEDIA_MAX_PER_SECOND, rate_limiter.MEDIA_BURST_MAX, rate_limiter.MEDIA_BURST_WINDOW_S)

    @classmethod
    def from_config(cls, service: str) -> "RateLimitSettings":
        defaults = cls.defaults_for(service)
        return cls(**{
            f.name: _typed(get_config(f"rate_limits.{service}.{f.name}", getattr(defaults, f.name)), getattr(defaults, f.name))
            for f in fields(cls)
        })

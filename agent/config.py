"""Runtime configuration for Loaf.

Settings come from three layers, lowest priority first:

1. Built-in defaults (``loaf_constants``)
2. ``~/.loaf/config.yaml`` -- top-level scalars are bridged into the
   environment when the variable is not already set
3. Environment variables (``~/.loaf/.env`` and a project ``.env`` are
   loaded into the environment by ``load_environment()``)

``LOAF_HOME`` relocates the whole home directory, which is also where
background scripts and custom tools live.
"""

import enum
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import yaml
from dotenv import load_dotenv

from loaf_constants import (
    DEFAULT_MODELS,
    DEFAULT_SYSTEM_INSTRUCTION,
    MAX_429_RETRY_ATTEMPTS,
    RETRY_BASE_DELAY_MS,
    RETRY_MAX_DELAY_MS,
)

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("openrouter", "openai", "gemini")

# config.yaml key -> environment variable
_CONFIG_ENV_MAP = {
    "provider": "LOAF_PROVIDER",
    "model": "LOAF_MODEL",
    "thinking_level": "LOAF_THINKING",
    "include_thoughts": "LOAF_INCLUDE_THOUGHTS",
    "system_instruction": "LOAF_SYSTEM_INSTRUCTION",
    "forced_provider": "LOAF_FORCED_PROVIDER",
}

_RETRY_ENV_MAP = {
    "attempts": "LOAF_RETRY_ATTEMPTS",
    "base_delay_ms": "LOAF_RETRY_BASE_DELAY_MS",
    "max_delay_ms": "LOAF_RETRY_MAX_DELAY_MS",
}


class ThinkingLevel(str, enum.Enum):
    OFF = "OFF"
    MINIMAL = "MINIMAL"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    XHIGH = "XHIGH"

    @classmethod
    def parse(cls, value) -> "ThinkingLevel":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().upper()
        try:
            return cls(text)
        except ValueError:
            allowed = ", ".join(level.value for level in cls)
            raise ValueError(f"unknown thinking level {value!r} (expected one of: {allowed})") from None


class ProviderConfigError(ValueError):
    """Raised when a provider cannot be built from the current configuration."""


def get_loaf_home() -> Path:
    return Path(os.getenv("LOAF_HOME", Path.home() / ".loaf"))


def _load_env_file(path: Path) -> None:
    try:
        load_dotenv(dotenv_path=path, encoding="utf-8")
    except UnicodeDecodeError:
        load_dotenv(dotenv_path=path, encoding="latin-1")


def load_environment(project_dir: Optional[Path] = None) -> Optional[Path]:
    """Load ``.env`` files and bridge ``config.yaml`` into the environment.

    Returns the ``.env`` path that was loaded, if any.
    """
    home = get_loaf_home()
    user_env = home / ".env"
    project_env = (project_dir or Path.cwd()) / ".env"

    loaded = None
    if user_env.exists():
        _load_env_file(user_env)
        loaded = user_env
        logger.info("Loaded environment variables from %s", user_env)
    elif project_env.exists():
        _load_env_file(project_env)
        loaded = project_env
        logger.info("Loaded environment variables from %s", project_env)
    else:
        logger.info("No .env file found. Using system environment variables.")

    bridge_config_yaml(home / "config.yaml")
    return loaded


def bridge_config_yaml(config_path: Path) -> Dict[str, str]:
    """Copy config.yaml values into env vars that are not already set."""
    if not config_path.exists():
        return {}
    try:
        cfg = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Ignoring unreadable config %s: %s", config_path, e)
        return {}
    if not isinstance(cfg, dict):
        logger.warning("Ignoring config %s: top level is not a mapping", config_path)
        return {}

    bridged = {}
    for key, env_var in _CONFIG_ENV_MAP.items():
        value = cfg.get(key)
        if isinstance(value, (str, int, float, bool)) and env_var not in os.environ:
            os.environ[env_var] = str(value)
            bridged[env_var] = str(value)

    retry_cfg = cfg.get("retry")
    if isinstance(retry_cfg, dict):
        for key, env_var in _RETRY_ENV_MAP.items():
            if key in retry_cfg and env_var not in os.environ:
                os.environ[env_var] = str(retry_cfg[key])
                bridged[env_var] = str(retry_cfg[key])
    return bridged


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


@dataclass
class LoafConfig:
    home: Path = field(default_factory=get_loaf_home)
    provider: str = "openrouter"
    model: str = ""
    thinking_level: ThinkingLevel = ThinkingLevel.MEDIUM
    include_thoughts: bool = False
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION
    forced_provider: Optional[str] = None
    openrouter_api_key: str = ""
    openai_api_key: str = ""
    openai_base_url: Optional[str] = None
    gemini_api_key: str = ""
    retry_attempts: int = MAX_429_RETRY_ATTEMPTS
    retry_base_delay_ms: int = RETRY_BASE_DELAY_MS
    retry_max_delay_ms: int = RETRY_MAX_DELAY_MS

    def __post_init__(self):
        self.provider = (self.provider or "openrouter").strip().lower()
        if self.provider not in SUPPORTED_PROVIDERS:
            raise ProviderConfigError(
                f"unknown provider {self.provider!r} (expected one of: {', '.join(SUPPORTED_PROVIDERS)})"
            )
        self.thinking_level = ThinkingLevel.parse(self.thinking_level)
        if not self.model:
            self.model = DEFAULT_MODELS[self.provider]

    @classmethod
    def from_env(cls, **overrides) -> "LoafConfig":
        values = dict(
            home=get_loaf_home(),
            provider=os.getenv("LOAF_PROVIDER", "openrouter"),
            model=os.getenv("LOAF_MODEL", ""),
            thinking_level=os.getenv("LOAF_THINKING", ThinkingLevel.MEDIUM.value),
            include_thoughts=_env_bool("LOAF_INCLUDE_THOUGHTS"),
            system_instruction=os.getenv("LOAF_SYSTEM_INSTRUCTION", "").strip() or DEFAULT_SYSTEM_INSTRUCTION,
            forced_provider=os.getenv("LOAF_FORCED_PROVIDER") or None,
            openrouter_api_key=os.getenv("OPENROUTER_API_KEY", ""),
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
            gemini_api_key=os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY", ""),
            retry_attempts=_env_int("LOAF_RETRY_ATTEMPTS", MAX_429_RETRY_ATTEMPTS),
            retry_base_delay_ms=_env_int("LOAF_RETRY_BASE_DELAY_MS", RETRY_BASE_DELAY_MS),
            retry_max_delay_ms=_env_int("LOAF_RETRY_MAX_DELAY_MS", RETRY_MAX_DELAY_MS),
        )
        # None means "not given" for CLI passthrough
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def api_key_for(self, provider: Optional[str] = None) -> str:
        provider = provider or self.provider
        return {
            "openrouter": self.openrouter_api_key,
            "openai": self.openai_api_key,
            "gemini": self.gemini_api_key,
        }.get(provider, "").strip()

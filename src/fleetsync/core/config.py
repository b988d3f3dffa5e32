from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import find_dotenv, load_dotenv

from .errors import ConfigError


# ---------- Typed sections ----------

@dataclass
class AppSection:
    run_id: Optional[str] = None
    concurrency: int = 4
    state_dir: str = ".fleetsync"


@dataclass
class ExecutorSection:
    max_attempts: int = 3
    backoff_base_sec: float = 0.5
    max_backoff_sec: float = 8.0
    call_timeout_sec: float = 60.0


@dataclass
class ProvidersSection:
    # kind -> provider name (see providers.registry.PROVIDERS)
    kinds: Dict[str, str] = field(default_factory=dict)
    # kind -> {concurrency, max_attempts, backoff_base_sec, max_backoff_sec, call_timeout_sec}
    overrides: Dict[str, Dict[str, Any]] = field(default_factory=dict)


@dataclass
class GatewaySection:
    base_url: str = ""
    token: str = ""          # secret – never log in clear text
    verify_tls: bool = True
    timeout_sec: float = 30.0


@dataclass
class RegistrySection:
    root_dir: str = "state/registry"


@dataclass
class SchemaSection:
    path: str = ""
    search_paths: List[str] = field(default_factory=lambda: ["resources/schemas"])


@dataclass
class LoggingSection:
    base_dir: str = "logs"
    console_level: str = "INFO"   # INFO..CRITICAL
    file_level: str = "DEBUG"     # DEBUG..CRITICAL


@dataclass
class AppConfig:
    """Typed configuration object built by `load_config`."""
    app: AppSection
    executor: ExecutorSection
    providers: ProvidersSection
    gateway: GatewaySection
    registry: RegistrySection
    schema: SchemaSection
    logging: LoggingSection

    @property
    def run_id(self) -> str:
        """
        Return a stable run identifier for this process.
        Generated lazily when first accessed if not provided.
        """
        if not self.app.run_id:
            self.app.run_id = uuid.uuid4().hex[:12]
        return self.app.run_id


# ---------- Defaults ----------

DEFAULT_FILES: Tuple[str, ...] = (
    "./fleetsync.yml",
    os.path.expanduser("~/.config/fleetsync/config.yml"),
    "/etc/fleetsync/config.yml",
)

# Registry values are local file writes; everything else goes through the gateway.
_DEFAULT_KINDS: Dict[str, str] = {
    "ad_ou": "gateway",
    "ad_user": "gateway",
    "ad_group": "gateway",
    "gpo": "gateway",
    "gpo_link": "gateway",
    "share": "gateway",
    "service": "gateway",
    "registry_value": "registry_file",
}

_DEFAULTS: Dict[str, Any] = {
    "app": {"run_id": None, "concurrency": 4, "state_dir": ".fleetsync"},
    "executor": {
        "max_attempts": 3,
        "backoff_base_sec": 0.5,
        "max_backoff_sec": 8.0,
        "call_timeout_sec": 60.0,
    },
    "providers": {"kinds": dict(_DEFAULT_KINDS), "overrides": {}},
    "gateway": {"base_url": "", "token": "", "verify_tls": True, "timeout_sec": 30.0},
    "registry": {"root_dir": "state/registry"},
    "schema": {"path": "", "search_paths": ["resources/schemas"]},
    "logging": {"base_dir": "logs", "console_level": "INFO", "file_level": "DEBUG"},
}

_BOOL_KEYS = {"verify_tls"}
_INT_KEYS = {"concurrency", "max_attempts"}
_FLOAT_KEYS = {"backoff_base_sec", "max_backoff_sec", "call_timeout_sec", "timeout_sec"}
_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


# ---------- Utilities ----------

def _deep_merge(base: Dict[str, Any], ext: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Deep-merge for dicts: maps merge recursively, lists/scalars override.
    `ext` wins over `base`. Returns a new dict.
    """
    if not ext:
        return dict(base)
    out: Dict[str, Any] = dict(base)
    for k, v in ext.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _read_yaml_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML must be a mapping: {path}")
    return data


def _load_first_existing(files: Tuple[str, ...]) -> Dict[str, Any]:
    for p in files:
        if os.path.exists(p):
            return _read_yaml_file(p)
    return {}


def _load_dotenv() -> None:
    """Load a .env found from the working directory (does not override the shell)."""
    env_path = find_dotenv(usecwd=True) or ""
    if env_path:
        load_dotenv(env_path, override=False)


def _env_to_dict(prefix: str = "FSYNC_") -> Dict[str, Any]:
    """
    Convert FSYNC_FOO__BAR=val to {"foo": {"bar": "val"}} (lowercased keys).
    """
    out: Dict[str, Any] = {}
    plen = len(prefix)
    for key, val in os.environ.items():
        if not key.startswith(prefix):
            continue
        path = key[plen:].lower().split("__")
        cursor = out
        for part in path[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[path[-1]] = val
    return out


def _interpolate_env(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Replace values like "${VAR}" with os.environ["VAR"] when present.
    """
    def repl(v: Any) -> Any:
        if isinstance(v, str) and v.startswith("${") and v.endswith("}"):
            return os.environ.get(v[2:-1], "")
        return v

    def walk(obj: Any) -> Any:
        if isinstance(obj, dict):
            return {k: walk(repl(v)) for k, v in obj.items()}
        if isinstance(obj, list):
            return [walk(x) for x in obj]
        return repl(obj)

    return walk(cfg)


def _coerce_types(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Type coercion for booleans, integers and floats in known keys.
    """
    def to_bool(x: Any) -> bool:
        return str(x).strip().lower() in {"1", "true", "yes", "y", "on"}

    def walk(obj: Any, key_path: Tuple[str, ...] = ()) -> Any:
        if isinstance(obj, dict):
            return {k: walk(v, key_path + (k,)) for k, v in obj.items()}
        if isinstance(obj, list):
            return [walk(v, key_path) for v in obj]
        key = key_path[-1] if key_path else ""
        try:
            if key in _BOOL_KEYS:
                return to_bool(obj)
            if key in _INT_KEYS:
                return int(obj)
            if key in _FLOAT_KEYS:
                return float(obj)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid value for {'.'.join(key_path)}: {obj!r}") from exc
        return obj

    return walk(cfg)


def _validate(cfg: Dict[str, Any]) -> None:
    problems = []
    if int(cfg["app"].get("concurrency", 1)) < 1:
        problems.append("app.concurrency must be >= 1")
    ex = cfg["executor"]
    if int(ex.get("max_attempts", 1)) < 1:
        problems.append("executor.max_attempts must be >= 1")
    for key in ("backoff_base_sec", "max_backoff_sec", "call_timeout_sec"):
        if float(ex.get(key, 0)) < 0:
            problems.append(f"executor.{key} must be >= 0")
    for name, ov in (cfg["providers"].get("overrides") or {}).items():
        if not isinstance(ov, dict):
            problems.append(f"providers.overrides.{name} must be a mapping")
    for key in ("console_level", "file_level"):
        level = str(cfg["logging"].get(key, "")).upper()
        if level not in _LEVELS:
            problems.append(f"logging.{key} must be one of {', '.join(sorted(_LEVELS))}")
    if problems:
        raise ConfigError("Invalid configuration: " + "; ".join(problems))


# ---------- Public API ----------

def load_config(
    cli_overrides: Optional[Dict[str, Any]] = None,
    files: Tuple[str, ...] = DEFAULT_FILES,
    env_prefix: str = "FSYNC_",
    *,
    use_dotenv: bool = True,
) -> AppConfig:
    """
    Build an AppConfig from (in precedence order):
      1) CLI overrides
      2) Environment variables (prefix FSYNC_, nested via __; a .env file is loaded first)
      3) YAML file (first existing)
      4) Built-in defaults

    Also performs:
      - ${ENV_VAR} interpolation
      - type coercion (bool/int/float)
      - validation of ranges and log levels
    """
    if use_dotenv:
        _load_dotenv()

    # Load file first (low precedence)
    file_cfg = _load_first_existing(files)

    # Env overlay
    env_cfg = _env_to_dict(env_prefix)

    # Combine: defaults <- file <- env <- cli
    merged = _deep_merge(_DEFAULTS, file_cfg)
    merged = _deep_merge(merged, env_cfg)
    merged = _deep_merge(merged, cli_overrides or {})

    # Interpolate and coerce
    merged = _interpolate_env(merged)
    merged = _coerce_types(merged)

    _validate(merged)

    try:
        return AppConfig(
            app=AppSection(**merged.get("app", {})),
            executor=ExecutorSection(**merged.get("executor", {})),
            providers=ProvidersSection(**merged.get("providers", {})),
            gateway=GatewaySection(**merged.get("gateway", {})),
            registry=RegistrySection(**merged.get("registry", {})),
            schema=SchemaSection(**merged.get("schema", {})),
            logging=LoggingSection(**merged.get("logging", {})),
        )
    except TypeError as exc:
        raise ConfigError(f"Unknown configuration key: {exc}") from exc

"""Configuration loading and validation for bulkgen."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, MutableMapping, Optional, Tuple

import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[2]
CONFIG_DIR = PROJECT_ROOT / "config"
CONFIG_PATH = CONFIG_DIR / "config.yaml"
ENV_CONFIG_PATH = "BULKGEN_CONFIG"


DEFAULT_CONFIG: Dict[str, Any] = {
    "api": {
        "base_url": "http://localhost:3000",
        "timeout": 300,
        "generate_path": "/api/admin/content-production/regenerate",
        "logs_path": "/api/admin/content-production/logs",
        "items_path": "/api/admin/content-production",
        "auth_token": None,
    },
    "scheduler": {
        "concurrency": 5,
        "retry_failed": False,
    },
    "content": {
        "mode": "bible",
        "expected_translations": [],
    },
    "queue": {
        "success_dismiss_seconds": 30,
        "stale_check_interval": 5,
        "max_running_age": None,
    },
    "paths": {
        "data": "data",
        "queue_db": "data/queue.db",
        "outputs": "data/outputs",
        "metrics": "data/metrics",
        "summaries": "data/summaries",
        "logs": "logs",
    },
    "logging": {
        "console_level": "INFO",
        "file_level": "DEBUG",
        "json_logs": False,
        "color": True,
    },
}


@dataclass(frozen=True)
class ConfigLoadResult:
    """Container for the merged configuration."""

    config: Dict[str, Any]
    sources: Tuple[str, ...]


def _ensure_default_config(path: Path) -> None:
    if path.exists():
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    with tmp.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(DEFAULT_CONFIG, handle, sort_keys=True)
    tmp.replace(path)


def _load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, MutableMapping):
        raise ValueError(f"Configuration file {path} must contain a mapping at the root")
    return dict(data)


def _deep_merge(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = dict(base)
    for key, value in overlay.items():
        if (
            key in merged
            and isinstance(merged[key], MutableMapping)
            and isinstance(value, MutableMapping)
        ):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _resolve_path(base_dir: Path, value: str) -> Path:
    path = Path(value)
    if path.is_absolute():
        return path
    return (base_dir / value).resolve()


def _apply_path_defaults(config: Dict[str, Any], base_dir: Path) -> Dict[str, Any]:
    paths = dict(config.get("paths", {}))
    for key, rel_path in paths.items():
        if isinstance(rel_path, str) and rel_path:
            paths[key] = str(_resolve_path(base_dir, rel_path))
    config["paths"] = paths
    return config


def _ensure_directories(config: Mapping[str, Any]) -> None:
    path_config = config.get("paths", {})
    for key in ("data", "outputs", "metrics", "summaries", "logs"):
        value = path_config.get(key)
        if value:
            Path(value).mkdir(parents=True, exist_ok=True)
    queue_db = path_config.get("queue_db")
    if queue_db:
        Path(queue_db).parent.mkdir(parents=True, exist_ok=True)


def _collect_sources(explicit: Optional[Path]) -> Iterable[Tuple[Path, bool]]:
    if explicit is not None:
        yield explicit, False
        return
    yield CONFIG_PATH, True
    env_path = os.getenv(ENV_CONFIG_PATH)
    if env_path:
        yield Path(env_path), False


def _validate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    api = config.get("api")
    if not isinstance(api, Mapping) or not api.get("base_url"):
        raise ValueError("Configuration must define api.base_url")
    timeout = api.get("timeout")
    if timeout is None or float(timeout) <= 0:
        raise ValueError("api.timeout must be a positive number")
    concurrency = config.get("scheduler", {}).get("concurrency")
    if concurrency is None or int(concurrency) < 1:
        raise ValueError("scheduler.concurrency must be >= 1")
    mode = config.get("content", {}).get("mode")
    if mode not in ("bible", "positivity"):
        raise ValueError("content.mode must be 'bible' or 'positivity'")
    translations = config.get("content", {}).get("expected_translations")
    if not isinstance(translations, list):
        raise ValueError("content.expected_translations must be a list")
    queue = config.get("queue", {})
    if float(queue.get("stale_check_interval", 0)) <= 0:
        raise ValueError("queue.stale_check_interval must be > 0")
    if float(queue.get("success_dismiss_seconds", -1)) < 0:
        raise ValueError("queue.success_dismiss_seconds must be >= 0")
    max_age = queue.get("max_running_age")
    if max_age is not None and float(max_age) <= 0:
        raise ValueError("queue.max_running_age must be > 0 when set")
    return config


def load_config(
    path: str | Path | None = None,
    *,
    include_sources: bool = False,
) -> ConfigLoadResult | Dict[str, Any]:
    """Load and validate configuration settings.

    With ``path`` only that file is merged over the defaults and relative
    paths resolve against its directory; otherwise ``config/config.yaml``
    (created on first use) and ``$BULKGEN_CONFIG`` are consulted.
    """

    config: Dict[str, Any] = json.loads(json.dumps(DEFAULT_CONFIG))
    sources: list[str] = []
    explicit = Path(path) if path is not None else None
    if explicit is not None and not explicit.exists():
        raise FileNotFoundError(f"Configuration file not found: {explicit}")

    for source, required in _collect_sources(explicit):
        if required:
            _ensure_default_config(source)
        if not source.exists():
            continue
        data = _load_yaml(source)
        config = _deep_merge(config, data)
        sources.append(str(source.resolve()))

    config = json.loads(json.dumps(config))  # deep copy via JSON for immutability
    base_dir = explicit.resolve().parent if explicit is not None else PROJECT_ROOT
    config = _apply_path_defaults(config, base_dir)
    config = _validate_config(config)
    _ensure_directories(config)

    result = ConfigLoadResult(config=config, sources=tuple(sources))
    if include_sources:
        return result
    return result.config


__all__ = ["DEFAULT_CONFIG", "ConfigLoadResult", "load_config"]

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .storage import default_db_path, get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str


@dataclass(frozen=True)
class JobsConfig:
    lock_timeout_seconds: int
    max_attempts: int
    backoff_seconds: float
    max_backoff_seconds: float
    poll_due_interval_seconds: int


@dataclass(frozen=True)
class ResilienceConfig:
    failure_threshold: int
    open_cooldown_seconds: float
    rate_per_second: float
    burst: int
    acquire_timeout_seconds: float
    http_timeout_seconds: int
    user_agent: str


@dataclass(frozen=True)
class ReconcileConfig:
    lock_ttl_seconds: float
    lock_wait_seconds: float
    lock_poll_interval_seconds: float


@dataclass(frozen=True)
class DLQConfig:
    warning: int
    error: int
    critical: int
    cooldown_seconds: float
    check_interval_seconds: int


@dataclass(frozen=True)
class SourcesConfig:
    allowed_hosts: list[str]
    unsupported_recheck_days: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    jobs: JobsConfig
    resilience: ResilienceConfig
    reconcile: ReconcileConfig
    dlq: DLQConfig
    sources: SourcesConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "ChapterSync",
        "timezone": "UTC",
    },
    "paths": {
        "data_dir": "/data",
        "state_db": "/data/state.sqlite3",
    },
    "jobs": {
        "lock_timeout_seconds": 600,
        "max_attempts": 5,
        "backoff_seconds": 30.0,
        "max_backoff_seconds": 3600.0,
        "poll_due_interval_seconds": 60,
    },
    "resilience": {
        "failure_threshold": 5,
        "open_cooldown_seconds": 300.0,
        "rate_per_second": 5.0,
        "burst": 5,
        "acquire_timeout_seconds": 10.0,
        "http_timeout_seconds": 20,
        "user_agent": "ChapterSync/0.1",
    },
    "reconcile": {
        "lock_ttl_seconds": 30.0,
        "lock_wait_seconds": 10.0,
        "lock_poll_interval_seconds": 0.1,
    },
    "dlq": {
        "warning": 50,
        "error": 200,
        "critical": 500,
        "cooldown_seconds": 300.0,
        "check_interval_seconds": 300,
    },
    "sources": {
        "allowed_hosts": ["mangadex.org", "api.mangadex.org"],
        "unsupported_recheck_days": 7,
    },
}

CONFIG_KEY = "config.runtime"

SOURCE_FILE_FIELDS = {
    "id",
    "series_id",
    "source_name",
    "source_id",
    "source_url",
    "trust_score",
    "check_interval_minutes",
    "source_status",
}


def get_state_db_path() -> str:
    return default_db_path()


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _deep_copy(DEFAULT_CONFIG))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return _build_config(cfg)


def default_config() -> Config:
    return _build_config(_deep_copy(DEFAULT_CONFIG))


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if not errors:
        _validate_semantics(cfg, errors)
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        for item in value:
            if not isinstance(item, str):
                errors.append(f"{path} must be a list of strings")
                break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _validate_semantics(cfg: dict[str, Any], errors: list[str]) -> None:
    dlq = cfg["dlq"]
    if not 0 < dlq["warning"] <= dlq["error"] <= dlq["critical"]:
        errors.append("config.runtime.dlq thresholds must satisfy 0 < warning <= error <= critical")
    jobs = cfg["jobs"]
    if jobs["max_attempts"] < 1:
        errors.append("config.runtime.jobs.max_attempts must be >= 1")
    resilience = cfg["resilience"]
    if resilience["failure_threshold"] < 1:
        errors.append("config.runtime.resilience.failure_threshold must be >= 1")
    if resilience["rate_per_second"] <= 0 or resilience["burst"] < 1:
        errors.append("config.runtime.resilience rate limiter must allow at least one token")
    if not cfg["sources"]["allowed_hosts"]:
        errors.append("config.runtime.sources.allowed_hosts must not be empty")


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    paths_cfg = cfg.get("paths") or {}
    jobs_cfg = cfg.get("jobs") or {}
    resilience_cfg = cfg.get("resilience") or {}
    reconcile_cfg = cfg.get("reconcile") or {}
    dlq_cfg = cfg.get("dlq") or {}
    sources_cfg = cfg.get("sources") or {}

    app = AppConfig(
        name=str(app_cfg.get("name")),
        timezone=str(app_cfg.get("timezone")),
    )

    data_dir = os.environ.get("CS_DATA_DIR", str(paths_cfg.get("data_dir")))
    paths = PathsConfig(
        data_dir=data_dir,
        state_db=str(paths_cfg.get("state_db")),
    )

    jobs = JobsConfig(
        lock_timeout_seconds=int(jobs_cfg.get("lock_timeout_seconds")),
        max_attempts=int(jobs_cfg.get("max_attempts")),
        backoff_seconds=float(jobs_cfg.get("backoff_seconds")),
        max_backoff_seconds=float(jobs_cfg.get("max_backoff_seconds")),
        poll_due_interval_seconds=int(jobs_cfg.get("poll_due_interval_seconds")),
    )

    resilience = ResilienceConfig(
        failure_threshold=int(resilience_cfg.get("failure_threshold")),
        open_cooldown_seconds=float(resilience_cfg.get("open_cooldown_seconds")),
        rate_per_second=float(resilience_cfg.get("rate_per_second")),
        burst=int(resilience_cfg.get("burst")),
        acquire_timeout_seconds=float(resilience_cfg.get("acquire_timeout_seconds")),
        http_timeout_seconds=int(resilience_cfg.get("http_timeout_seconds")),
        user_agent=str(resilience_cfg.get("user_agent")),
    )

    reconcile = ReconcileConfig(
        lock_ttl_seconds=float(reconcile_cfg.get("lock_ttl_seconds")),
        lock_wait_seconds=float(reconcile_cfg.get("lock_wait_seconds")),
        lock_poll_interval_seconds=float(reconcile_cfg.get("lock_poll_interval_seconds")),
    )

    dlq = DLQConfig(
        warning=int(dlq_cfg.get("warning")),
        error=int(dlq_cfg.get("error")),
        critical=int(dlq_cfg.get("critical")),
        cooldown_seconds=float(dlq_cfg.get("cooldown_seconds")),
        check_interval_seconds=int(dlq_cfg.get("check_interval_seconds")),
    )

    sources = SourcesConfig(
        allowed_hosts=[str(host).lower() for host in sources_cfg.get("allowed_hosts")],
        unsupported_recheck_days=int(sources_cfg.get("unsupported_recheck_days")),
    )

    return Config(
        app=app,
        paths=paths,
        jobs=jobs,
        resilience=resilience,
        reconcile=reconcile,
        dlq=dlq,
        sources=sources,
    )


def load_sources_file(path: str) -> list[dict[str, Any]]:
    """Read series source definitions from a YAML file.

    The file holds either a list of source mappings or a mapping with a
    ``sources`` list. Each entry needs series_id, source_name, source_id and
    source_url.
    """
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if isinstance(data, dict):
        data = data.get("sources") or []
    if not isinstance(data, list):
        raise ConfigError(f"{path}: expected a list of sources")
    entries: list[dict[str, Any]] = []
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            raise ConfigError(f"{path}: sources[{index}] must be a mapping")
        unknown = set(item) - SOURCE_FILE_FIELDS
        if unknown:
            raise ConfigError(
                f"{path}: sources[{index}] has unknown fields: {', '.join(sorted(unknown))}"
            )
        for required in ("series_id", "source_name", "source_id", "source_url"):
            if not str(item.get(required) or "").strip():
                raise ConfigError(f"{path}: sources[{index}] missing {required}")
        entries.append(dict(item))
    return entries


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))

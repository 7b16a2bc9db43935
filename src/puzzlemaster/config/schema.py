"""
puzzlemaster: runtime config schema.

Purpose
- Typed layout, defaults and strict validation for ``puzzlemaster.toml``.

Functional requirements
- Unknown keys are rejected with their dotted path.
- Validation reports every issue at once, in deterministic order.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, TypedDict

from puzzlemaster.constants import CONFIG_SCHEMA_VERSION, DEFAULT_ENVIRONMENT, ENVIRONMENTS, LOG_DIR

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("store", "path"),
    ("logging", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class StoreConfig(TypedDict):
    path: str
    busy_timeout_ms: int


class LoggingSettings(TypedDict):
    level: str
    log_dir: str
    log_to_stderr: bool
    json: bool
    redact_secrets: bool


class PuzzlemasterConfig(TypedDict):
    meta: MetaConfig
    env: str
    store: StoreConfig
    logging: LoggingSettings


# An empty store path means "the default database file for the selected env".
DEFAULT_CONFIG: Final[PuzzlemasterConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "env": DEFAULT_ENVIRONMENT,
    "store": {
        "path": "",
        "busy_timeout_ms": 5_000,
    },
    "logging": {
        "level": "INFO",
        "log_dir": LOG_DIR.as_posix(),
        "log_to_stderr": False,
        "json": True,
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> PuzzlemasterConfig:
    """Return a deep copy of built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged: dict[str, Any] = copy.deepcopy(dict(base))
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with dotted paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    _reject_unknown_keys(root, {"meta", "env", "store", "logging"}, "", issues)
    _require_keys(root, {"meta", "env", "store", "logging"}, "", issues)

    normalized: dict[str, Any] = {}

    meta = _as_object(root.get("meta", {}), "meta", issues)
    if meta is not None:
        _reject_unknown_keys(meta, {"schema_version"}, "meta", issues)
        version = _as_int(meta.get("schema_version"), "meta.schema_version", issues, minimum=1)
        if version is not None and version != ConfigSchemaVersion:
            issues.add(
                "meta.schema_version",
                f"unsupported schema version {version}; expected {ConfigSchemaVersion}",
            )
        normalized["meta"] = {"schema_version": version}

    normalized["env"] = _as_enum(root.get("env"), "env", issues, allowed_values=ENVIRONMENTS)

    store = _as_object(root.get("store", {}), "store", issues)
    if store is not None:
        _reject_unknown_keys(store, {"path", "busy_timeout_ms"}, "store", issues)
        raw_path = store.get("path", "")
        if not isinstance(raw_path, str):
            issues.add("store.path", f"expected string, got {type(raw_path).__name__}")
        elif "\x00" in raw_path:
            issues.add("store.path", "must not contain NUL bytes")
        normalized["store"] = {
            "path": raw_path.strip() if isinstance(raw_path, str) else raw_path,
            "busy_timeout_ms": _as_int(
                store.get("busy_timeout_ms"),
                "store.busy_timeout_ms",
                issues,
                minimum=0,
            ),
        }

    log_cfg = _as_object(root.get("logging", {}), "logging", issues)
    if log_cfg is not None:
        allowed = {"level", "log_dir", "log_to_stderr", "json", "redact_secrets"}
        _reject_unknown_keys(log_cfg, allowed, "logging", issues)
        level = log_cfg.get("level")
        normalized["logging"] = {
            "level": _as_enum(
                level.upper() if isinstance(level, str) else level,
                "logging.level",
                issues,
                allowed_values=LOG_LEVELS,
            ),
            "log_dir": _as_str(log_cfg.get("log_dir"), "logging.log_dir", issues),
            "log_to_stderr": _as_bool(log_cfg.get("log_to_stderr"), "logging.log_to_stderr", issues),
            "json": _as_bool(log_cfg.get("json"), "logging.json", issues),
            "redact_secrets": _as_bool(
                log_cfg.get("redact_secrets"),
                "logging.redact_secrets",
                issues,
            ),
        }

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        existing = target.get(key)
        if isinstance(value, Mapping) and isinstance(existing, dict):
            _merge_into(existing, value)
        elif isinstance(value, Mapping):
            target[key] = copy.deepcopy(dict(value))
        else:
            target[key] = copy.deepcopy(value)


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


__all__ = [
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "LoggingSettings",
    "PuzzlemasterConfig",
    "StoreConfig",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "validate_config",
]

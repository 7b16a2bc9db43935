from __future__ import annotations

import pytest

from puzzlemaster.config.schema import (
    DEFAULT_CONFIG,
    ConfigValidationError,
    assert_valid_config,
    default_config,
    merge_config,
    validate_config,
)


def test_defaults_validate_successfully() -> None:
    result = validate_config(default_config())

    assert result.is_valid
    assert result.config == DEFAULT_CONFIG


def test_default_config_is_a_deep_copy() -> None:
    config = default_config()
    config["logging"]["level"] = "DEBUG"

    assert DEFAULT_CONFIG["logging"]["level"] == "INFO"


def test_unknown_key_rejection_is_explicit() -> None:
    config = merge_config(default_config(), {"store": {"pool_size": 4}, "surprise": True})

    result = validate_config(config)

    assert not result.is_valid
    assert [(issue.path, issue.message) for issue in result.issues] == [
        ("surprise", "unknown field"),
        ("store.pool_size", "unknown field"),
    ]


def test_type_validation_reports_structured_paths() -> None:
    config = merge_config(
        default_config(),
        {
            "store": {"busy_timeout_ms": -5},
            "logging": {"json": "yes", "log_dir": "  ", "level": "LOUD"},
        },
    )

    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(config)

    assert [issue.path for issue in excinfo.value.issues] == [
        "store.busy_timeout_ms",
        "logging.level",
        "logging.log_dir",
        "logging.json",
    ]
    assert "- store.busy_timeout_ms: must be >= 0" in str(excinfo.value)


def test_schema_version_must_match() -> None:
    config = merge_config(default_config(), {"meta": {"schema_version": 2}})

    result = validate_config(config)

    assert [issue.path for issue in result.issues] == ["meta.schema_version"]
    assert "unsupported schema version 2" in result.issues[0].message


def test_non_mapping_root_and_missing_sections() -> None:
    assert validate_config(["not", "a", "table"]).issues[0].path == "<root>"

    result = validate_config({"meta": {"schema_version": 1}, "env": "test"})
    missing = [issue.path for issue in result.issues if issue.message == "missing required field"]
    assert missing == ["logging", "store"]


def test_merge_is_deep_and_does_not_mutate_inputs() -> None:
    base = default_config()
    overlay = {"logging": {"level": "DEBUG"}}

    merged = merge_config(base, overlay)

    assert merged["logging"]["level"] == "DEBUG"
    assert merged["logging"]["json"] is True
    assert base["logging"]["level"] == "INFO"

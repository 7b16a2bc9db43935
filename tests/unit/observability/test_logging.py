"""
puzzlemaster: unit tests for observability logging

Purpose
- Validate structured JSON logging with redaction, correlation metadata, and queue-backed reliability.

What this test file should cover
- JSON line validity and redaction guarantees.
- Correlation field propagation, including structlog events.
- Text output mode and the settings-mapping wrapper.
- Queue drain/shutdown behavior.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
import structlog

from puzzlemaster.domain.models import JobStatus
from puzzlemaster.observability.logging import (
    LoggingConfig,
    correlation_scope,
    default_log_redactor,
    get_active_logging_handle,
    get_correlation_context,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()


def _logger_name() -> str:
    return f"puzzlemaster.tests.logging.{uuid4().hex}"


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    lines = path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_json_logging_redacts_secrets_and_preserves_correlation_fields(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(LoggingConfig(base_log_dir=tmp_path, logger_name=logger_name))
    logger = logging.getLogger(logger_name)

    with correlation_scope(method="get-role", request_id="req-1"):
        logger.info(
            "payload token=tok-FAKE and api_key=sk-FAKE123456789012345",
            extra={"nested": {"password": "hunter2", "safe": "ok"}},
        )

    shutdown_logging(handle)

    assert handle.log_path is not None
    parsed = _read_json_lines(handle.log_path)
    assert len(parsed) == 1
    first = parsed[0]
    assert first["method"] == "get-role"
    assert first["request_id"] == "req-1"
    assert first["level"] == "INFO"
    assert first["logger"] == logger_name
    assert str(first["timestamp"]).endswith("Z")
    assert first["fields"] == {"nested": {"password": "***REDACTED***", "safe": "ok"}}

    line = handle.log_path.read_text(encoding="utf-8")
    assert "tok-FAKE" not in line
    assert "sk-FAKE" not in line
    assert "hunter2" not in line


def test_structlog_events_are_bridged_into_json_lines(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(LoggingConfig(base_log_dir=tmp_path, logger_name=logger_name))
    log = structlog.get_logger(f"{logger_name}.gateways")

    with correlation_scope(import_id="imp-7"):
        log.info("planning_entity_created", entity="Role", entity_id="abc")
    log.debug("filtered_out", entity="Role")

    shutdown_logging(handle)

    assert handle.log_path is not None
    parsed = _read_json_lines(handle.log_path)
    assert len(parsed) == 1
    event = parsed[0]
    assert event["message"] == "planning_entity_created"
    assert event["logger"] == f"{logger_name}.gateways"
    assert event["import_id"] == "imp-7"
    assert event["fields"] == {"entity": "Role", "entity_id": "abc"}


def test_setup_logging_wrapper_uses_config_mapping(tmp_path: Path) -> None:
    logger_name = _logger_name()
    logger = setup_logging(
        {"level": "DEBUG", "log_dir": str(tmp_path), "json": True, "redact_secrets": True},
        logger_name=logger_name,
    )

    logger.debug("hello", extra={"token": "t-123"})
    shutdown_logging()

    content = (tmp_path / "puzzlemaster.jsonl").read_text(encoding="utf-8")
    assert "hello" in content
    assert "t-123" not in content


def test_redaction_can_be_disabled(tmp_path: Path) -> None:
    logger_name = _logger_name()
    logger = setup_logging(
        {"level": "INFO", "log_dir": str(tmp_path), "redact_secrets": False},
        logger_name=logger_name,
    )

    logger.info("token=visible", extra={"password": "plain"})
    shutdown_logging()

    content = (tmp_path / "puzzlemaster.jsonl").read_text(encoding="utf-8")
    assert "token=visible" in content
    assert '"password":"plain"' in content


def test_text_format_is_single_line_with_sorted_fields(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(base_log_dir=tmp_path, logger_name=logger_name, json_lines=False)
    )

    with correlation_scope(method="delete-role"):
        logging.getLogger(logger_name).warning("refused", extra={"zeta": 1, "alpha": "a"})
    shutdown_logging(handle)

    assert handle.log_path is not None
    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    parts = lines[0].split(" ")
    assert parts[1:4] == ["WARNING", logger_name, "refused"]
    assert parts[4:] == ["alpha=a", "method=delete-role", "zeta=1"]
    assert handle.log_path.name == "puzzlemaster.log"


def test_no_log_dir_means_no_file_sink() -> None:
    handle = setup_structured_logging(LoggingConfig(base_log_dir=None, logger_name=_logger_name()))

    assert handle.log_path is None
    assert get_active_logging_handle() is handle
    shutdown_logging()
    assert handle.is_shutdown
    assert get_active_logging_handle() is None


def test_correlation_scope_nests_and_restores() -> None:
    assert get_correlation_context() == {}
    with correlation_scope(method="get-project"):
        with correlation_scope(request_id="r-1", method=None):
            assert get_correlation_context() == {"request_id": "r-1"}
        assert get_correlation_context() == {"method": "get-project"}
    assert get_correlation_context() == {}

    with pytest.raises(ValueError, match="must not be empty"), correlation_scope(method="  "):
        pass


def test_default_redactor_handles_nested_values_and_bearer_tokens() -> None:
    redacted = default_log_redactor(
        {
            "headers": {"Authorization": "Bearer abc.def"},
            "notes": ["Bearer xyz123", "password: swordfish"],
            "count": 3,
        }
    )

    assert redacted == {
        "headers": {"Authorization": "***REDACTED***"},
        "notes": ["Bearer ***REDACTED***", "password:***REDACTED***"],
        "count": 3,
    }


def test_multithreaded_logging_produces_valid_json_lines(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(LoggingConfig(base_log_dir=tmp_path, logger_name=logger_name))
    logger = logging.getLogger(logger_name)

    def worker(index: int) -> None:
        with correlation_scope(request_id=f"req-{index}"):
            for sequence in range(25):
                logger.info("tick", extra={"worker": index, "sequence": sequence})

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    shutdown_logging(handle)

    assert handle.log_path is not None
    parsed = _read_json_lines(handle.log_path)
    assert len(parsed) == 100
    for event in parsed:
        fields = event["fields"]
        assert isinstance(fields, dict)
        assert event["request_id"] == f"req-{fields['worker']}"
    assert handle.dropped_records == 0


def test_invalid_logging_config_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="queue_size must be a positive integer"):
        setup_structured_logging(LoggingConfig(base_log_dir=tmp_path, queue_size=0))
    with pytest.raises(ValueError, match="unsupported logging level"):
        setup_structured_logging(LoggingConfig(base_log_dir=tmp_path, level="LOUD"))


def test_empty_log_dir_setting_disables_the_file_sink(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.chdir(tmp_path)
    logger = setup_logging({"log_dir": "", "level": "INFO"}, logger_name=_logger_name())
    handle = get_active_logging_handle()

    logger.info("nowhere")
    shutdown_logging()

    assert handle is not None
    assert handle.log_path is None
    assert list(tmp_path.iterdir()) == []


def test_extra_fields_are_normalized_to_json(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(LoggingConfig(base_log_dir=tmp_path, logger_name=logger_name))

    logging.getLogger(logger_name).info(
        "normalized",
        extra={
            "status": JobStatus.RUNNING,
            "db": tmp_path / "plans.db",
            "tags": {"b", "a"},
            "ratio": 0.5,
        },
    )
    shutdown_logging(handle)

    assert handle.log_path is not None
    (event,) = _read_json_lines(handle.log_path)
    assert event["fields"] == {
        "status": "RUNNING",
        "db": str(tmp_path / "plans.db"),
        "tags": ["a", "b"],
        "ratio": 0.5,
    }

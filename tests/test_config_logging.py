import json
import logging

import pytest
import structlog
from pydantic import ValidationError

from EmxImporter.config import Settings, load_settings
from EmxImporter.logging import import_log_context, redact_settings, setup_logging


def test_toml_importer_section_is_loaded(tmp_path, monkeypatch):
    (tmp_path / "config.toml").write_text(
        "\n".join(
            [
                "[app]",
                'env = "test"',
                "[importer]",
                "hugeset_spill_threshold = 10",
                'hugeset_tmp_dir = "/var/tmp/emx"',
                'default_action = "update"',
                "[logging]",
                "console = false",
                'to_file = "WARNING"',
            ]
        )
    )
    monkeypatch.chdir(tmp_path)

    s = load_settings()

    assert s.env == "test"
    assert s.importer_hugeset_spill_threshold == 10
    assert s.importer_hugeset_tmp_dir == "/var/tmp/emx"
    assert s.importer_default_action == "UPDATE"
    assert s.logging_console == "NONE"
    assert s.logging_file == "WARNING"
    assert s.logging_to_console is False


def test_environment_overrides_toml(tmp_path, monkeypatch):
    (tmp_path / "config.toml").write_text("[importer]\nhugeset_spill_threshold = 10\n")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("IMPORTER_HUGESET_SPILL_THRESHOLD", "25")

    assert load_settings().importer_hugeset_spill_threshold == 25


def test_unknown_default_action_is_rejected():
    with pytest.raises(ValidationError):
        Settings(importer_default_action="REPLACE")


def test_redact_settings_hides_database_password():
    s = Settings(database_url="postgresql+asyncpg://emx:hunter2@db:5432/emx")
    redacted = redact_settings(s)
    assert "hunter2" not in redacted["database_url"]
    assert redacted["importer_default_action"] == "ADD_UPDATE_EXISTING"


def test_setup_logging_writes_json_lines(tmp_path):
    log_path = tmp_path / "logs" / "emx.jsonl"
    s = Settings(
        logging_console="NONE",
        logging_file="INFO",
        logging_file_path=str(log_path),
    )
    try:
        setup_logging(s)
        structlog.get_logger().info("importer.test.event", entity="Person")
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = log_path.read_text().splitlines()
        record = json.loads(lines[-1])
        assert record["event"] == "importer.test.event"
        assert record["entity"] == "Person"
        assert record["level"] == "info"
    finally:
        for handler in logging.getLogger().handlers:
            handler.close()
        logging.basicConfig(force=True)
        structlog.reset_defaults()


def test_import_log_context_binds_fields_for_the_block():
    with import_log_context(import_id="01ABC", action="ADD"):
        bound = structlog.contextvars.get_contextvars()
        assert bound["import_id"] == "01ABC"
        assert bound["action"] == "ADD"
    assert "import_id" not in structlog.contextvars.get_contextvars()


def test_disabled_logging_keeps_only_warnings(tmp_path):
    s = Settings(
        logging_enabled=False,
        logging_console="NONE",
        logging_file="DEBUG",
        logging_file_path=str(tmp_path / "emx.jsonl"),
    )
    try:
        setup_logging(s)
        assert logging.getLogger().level == logging.WARNING
    finally:
        for handler in logging.getLogger().handlers:
            handler.close()
        logging.basicConfig(force=True)
        structlog.reset_defaults()

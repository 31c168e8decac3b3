"""Tests for context filtering and JSON file output of the logger service."""

import json
import logging

import pytest

from hestia.logger_service import MASK, ContextFormatter, LoggerService


class DictConfig:
    def __init__(self, values):
        self.values = values

    def get(self, key, default=None):
        return self.values.get(key, default)


@pytest.fixture
def file_logger(tmp_path):
    service = LoggerService(DictConfig({
        "logging.level": "DEBUG",
        "logging.console.enabled": False,
        "logging.file.enabled": True,
        "logging.file.directory": str(tmp_path),
        "logging.file.filename": "test.log",
    }))
    yield service, tmp_path / "test.log"
    logging.getLogger("hestia").handlers.clear()


def test_sensitive_context_is_masked(file_logger):
    service, _ = file_logger

    filtered = service._filter_sensitive_data({
        "model_id": "m-1",
        "api_key": "abc",
        "nested": {"password": "pw", "version": "1.0.0"},
        "items": [{"token": "t"}, 3],
        "blob": "A" * 48,
    })

    assert filtered == {
        "model_id": "m-1",
        "api_key": MASK,
        "nested": {"password": MASK, "version": "1.0.0"},
        "items": [{"token": MASK}, 3],
        "blob": MASK,
    }
    assert service._filter_sensitive_data({}) is None


@pytest.mark.asyncio
async def test_records_are_written_as_json(file_logger):
    service, path = file_logger

    service.info(
        "Model %s promoted", "m-1",
        source_module="ModelRegistry",
        context={"stage": "production", "secret": "s"})
    await service.stop()

    record = json.loads(path.read_text().strip().splitlines()[-1])
    assert record["message"] == "Model m-1 promoted"
    assert record["name"] == "hestia.ModelRegistry"
    assert record["level"] == "INFO"
    assert record["context"] == {"stage": "production", "secret": MASK}


def test_console_format_drops_empty_context():
    formatter = ContextFormatter("%(levelname)s - %(message)s - [%(context)s]")
    bare = logging.LogRecord("hestia", logging.INFO, __file__, 1, "ready", None, None)
    rich = logging.LogRecord("hestia", logging.INFO, __file__, 1, "ready", None, None)
    rich.context = {"model_id": "m-1"}

    assert formatter.format(bare) == "INFO - ready"
    assert formatter.format(rich) == "INFO - ready - [model_id=m-1]"

import json
import logging

import pytest

from lofiradio import LOGGER_NAME
from lofiradio.config import DEFAULT_CONFIG, ConfigManager, merge_into
from lofiradio.logs import setup_logging


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True


def test_defaults(tmp_path):
    config = ConfigManager(config_file=str(tmp_path / "missing.json"))
    loaded = config.load()
    assert loaded["fetch"]["attempts"] == 5
    assert loaded["catalog"]["source"] == DEFAULT_CONFIG["catalog"]["source"]
    assert "~" not in loaded["system"]["log_dir"]


def test_file_overrides_are_merged(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"fetch": {"attempts": 3}, "ui": {"alternate": True}}))
    config = ConfigManager(config_file=str(path))
    config.load()

    assert config.get("fetch", "attempts") == 3
    assert config.get("fetch", "timeout") == DEFAULT_CONFIG["fetch"]["timeout"]
    assert config.get("ui", "alternate") is True
    assert config.get("system", "config_file") == str(path)


def test_invalid_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")
    config = ConfigManager(config_file=str(path))
    config.load()
    assert config.get("fetch", "attempts") == 5

    path.write_text("[1, 2, 3]")
    config.load()
    assert config.get("fetch", "attempts") == 5


def test_defaults_are_not_shared(tmp_path):
    config = ConfigManager(config_file=str(tmp_path / "none.json"))
    config.update("catalog", {"source": "/tmp/tracks.txt"})
    assert DEFAULT_CONFIG["catalog"]["source"] != "/tmp/tracks.txt"
    assert ConfigManager().get("catalog", "source") == DEFAULT_CONFIG["catalog"]["source"]


def test_get_missing_keys():
    config = ConfigManager()
    assert config.get("nope") is None
    assert config.get("fetch", "attempts", "deeper") is None


def test_update_unknown_section():
    config = ConfigManager()
    with pytest.raises(KeyError):
        config.update("nope", {"a": 1})
    assert config.get("nope") is None

    config.update("audio", {"initial_volume": 0.5})
    assert config.section("audio")["initial_volume"] == 0.5
    assert config.section("audio")["max_volume"] == 1.0


def test_get_stops_at_missing_key():
    config = ConfigManager()
    config.update("catalog", {"extensions": None})
    assert config.get("catalog", "extensions") is None
    assert config.get("catalog", "missing", "deeper") is None
    assert config.get("catalog", "max_depth") == 2


def test_merge_into_merges_nested_sections():
    base = {"fetch": {"attempts": 5, "timeout": 15}, "ui": {"alternate": False}}
    merged = merge_into(base, {"fetch": {"attempts": 2}, "ui": "flat", "extra": {"a": 1}})
    assert merged is base
    assert base == {"fetch": {"attempts": 2, "timeout": 15}, "ui": "flat", "extra": {"a": 1}}


def test_file_paths_are_expanded(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"system": {"log_dir": "~/lofi-logs"}}))
    config = ConfigManager(config_file=str(path))
    config.load()
    assert not config.get("system", "log_dir").startswith("~")
    assert config.get("system", "log_dir").endswith("lofi-logs")


def test_setup_logging_writes_file(tmp_path):
    logger = setup_logging(str(tmp_path / "logs"), "test.log", console=False)
    logger.getChild("pipeline").debug("Pipeline state changed: IDLE -> PREFETCHING")
    for handler in logger.handlers:
        handler.flush()

    content = (tmp_path / "logs" / "test.log").read_text()
    assert "LofiRadio.pipeline - DEBUG - Pipeline state changed" in content
    assert not logger.propagate


def test_setup_logging_console_levels(tmp_path):
    logger = setup_logging(None, console=True)
    assert [h.level for h in logger.handlers] == [logging.INFO]

    logger = setup_logging(None, console=True, verbose=True)
    assert [h.level for h in logger.handlers] == [logging.DEBUG]


def test_setup_logging_without_handlers():
    logger = setup_logging(None, console=False)
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.NullHandler)

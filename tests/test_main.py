import json
import logging
import signal
from unittest.mock import MagicMock

import pytest

from lofiradio import LOGGER_NAME
from lofiradio import __main__ as cli
from lofiradio.config import ConfigManager
from lofiradio.errors import OutputDeviceError, StartupError


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"system": {"log_dir": str(tmp_path / "logs")}}))
    return str(path)


@pytest.fixture
def track_list(tmp_path):
    path = tmp_path / "tracks.txt"
    path.write_text("https://cdn.example.com/\none.mp3\ntwo.mp3!Second\n")
    return str(path)


def test_parser_defaults():
    args = cli.build_parser().parse_args([])
    assert args.volume is None
    assert args.source is None
    assert not args.no_ui
    assert not args.alternate
    assert not args.scrape


def test_apply_arguments():
    config = ConfigManager()
    args = cli.build_parser().parse_args(["-v", "40", "-s", "~/tracks.txt", "-a"])
    cli.apply_arguments(config, args)
    assert config.get("audio", "initial_volume") == pytest.approx(0.4)
    assert config.get("catalog", "source") == "~/tracks.txt"
    assert config.get("ui", "alternate") is True


def test_volume_argument_is_clamped():
    config = ConfigManager()
    cli.apply_arguments(config, cli.build_parser().parse_args(["--volume", "250"]))
    assert config.get("audio", "initial_volume") == 1.0
    cli.apply_arguments(config, cli.build_parser().parse_args(["--volume", "-5"]))
    assert config.get("audio", "initial_volume") == 0.0


def test_scrape_prints_catalog(config_file, track_list, capsys):
    assert cli.main(["--scrape", "--config", config_file, "--source", track_list]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out == ["https://cdn.example.com/one.mp3", "https://cdn.example.com/two.mp3"]


def test_scrape_unavailable_catalog(config_file, tmp_path, capsys):
    missing = str(tmp_path / "missing.txt")
    assert cli.main(["--scrape", "--config", config_file, "--source", missing]) == 1
    assert "Catalog unavailable" in capsys.readouterr().err


@pytest.mark.parametrize("error", [StartupError("ffmpeg not found"), OutputDeviceError("device lost")])
def test_fatal_errors_exit_nonzero(monkeypatch, config_file, capsys, error):
    class Radio:
        def __init__(self, config, logger):
            pass

        def run(self, headless=False):
            raise error

    monkeypatch.setattr(cli, "LofiRadio", Radio)
    assert cli.main(["--no-ui", "--config", config_file]) == 1
    assert f"Error: {error}" in capsys.readouterr().err


def test_runs_headless(monkeypatch, config_file):
    calls = []

    class Radio:
        def __init__(self, config, logger):
            calls.append(config.get("catalog", "max_depth"))

        def run(self, headless=False):
            calls.append(headless)

    monkeypatch.setattr(cli, "LofiRadio", Radio)
    assert cli.main(["--no-ui", "--config", config_file]) == 0
    assert calls == [2, True]


def test_radio_wiring(config_file):
    config = ConfigManager(config_file=config_file)
    config.load()
    config.update("audio", {"initial_volume": 0.3})
    config.update("control", {"volume_step": 0.05})

    radio = cli.LofiRadio(config, logging.getLogger("test.radio"))
    try:
        assert radio.state.volume.get() == pytest.approx(0.3)
        assert radio.pipeline.volume_step == 0.05
        assert radio.pipeline.sink is radio.sink
        assert radio.sink.on_finished == radio.pipeline._on_sink_finished
        assert radio.resolver.fetcher is radio.fetcher
        assert radio.fetcher.policy.attempts == 5
    finally:
        radio.fetcher.close()
        radio.pipeline.executor.shutdown(wait=False)


def test_unexpected_errors_exit_nonzero(monkeypatch, config_file, capsys):
    class Radio:
        def __init__(self, config, logger):
            pass

        def run(self, headless=False):
            raise RuntimeError("render thread died")

    monkeypatch.setattr(cli, "LofiRadio", Radio)
    assert cli.main(["--no-ui", "--config", config_file]) == 1
    assert "Error: render thread died" in capsys.readouterr().err


@pytest.fixture
def radio(config_file, monkeypatch):
    config = ConfigManager(config_file=config_file)
    config.load()
    radio = cli.LofiRadio(config, logging.getLogger("test.radio"))
    radio.signals = []
    monkeypatch.setattr(cli.signal, "signal", lambda signum, handler: radio.signals.append(signum))
    fetcher, pipeline = radio.fetcher, radio.pipeline
    yield radio
    fetcher.close()
    pipeline.executor.shutdown(wait=False)


def test_run_stops_pipeline_when_ui_fails(monkeypatch, radio):
    class BrokenUI:
        def __init__(self, bus, **kwargs):
            pass

        def run(self):
            raise OSError("not a terminal")

    monkeypatch.setattr(cli, "TerminalUI", BrokenUI)
    monkeypatch.setattr(radio, "start", lambda: None)
    radio.pipeline = MagicMock()
    radio.pipeline.wait.return_value = True
    radio.fetcher = MagicMock()

    with pytest.raises(OSError):
        radio.run(headless=False)
    radio.pipeline.stop.assert_called_once()
    radio.pipeline.wait.assert_called_once_with(cli.SHUTDOWN_TIMEOUT)
    radio.fetcher.close.assert_called_once()


def test_run_stops_pipeline_when_start_fails(monkeypatch, radio):
    def start():
        raise StartupError("ffmpeg not found")

    monkeypatch.setattr(radio, "start", start)
    radio.pipeline = MagicMock()
    radio.pipeline.wait.return_value = True

    with pytest.raises(StartupError):
        radio.run(headless=True)
    radio.pipeline.stop.assert_called_once()


@pytest.mark.parametrize("headless, expected", [
    (True, [signal.SIGINT, signal.SIGTERM]),
    (False, [signal.SIGTERM]),
])
def test_signal_handlers(radio, headless, expected):
    radio._install_signal_handlers(headless)
    assert radio.signals == expected


def test_sigterm_stops_the_pipeline(radio):
    radio.pipeline = MagicMock()
    radio._handle_signal(signal.SIGTERM, None)
    radio.pipeline.stop.assert_called_once()

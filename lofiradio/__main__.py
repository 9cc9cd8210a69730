import argparse
import logging
import signal
import sys
from typing import List, Optional

from lofiradio import VERSION
from lofiradio.audio import AudioSink, FFmpegDecoder
from lofiradio.catalog import TrackResolver
from lofiradio.config import ConfigManager
from lofiradio.control import ControlBus, PlaybackState
from lofiradio.errors import CatalogUnavailable, LofiRadioError, OutputDeviceError, StartupError
from lofiradio.fetcher import Fetcher
from lofiradio.logs import setup_logging
from lofiradio.pipeline import PlaybackPipeline
from lofiradio.ui import HeadlessMonitor, TerminalUI

SHUTDOWN_TIMEOUT = 5


class LofiRadio:
    def __init__(self, config: ConfigManager, logger: logging.Logger):
        self.config = config
        self.logger = logger

        audio = config.section("audio")
        control = config.section("control")
        pipeline = config.section("pipeline")

        self.fetcher = Fetcher.from_config(config.section("fetch"), logger=logger.getChild("fetcher"))
        self.resolver = TrackResolver.from_config(config.section("catalog"), self.fetcher,
                                                  logger=logger.getChild("catalog"))
        self.decoder = FFmpegDecoder(
            sample_rate=audio["sample_rate"],
            channels=audio["channels"],
            timeout=audio["decode_timeout"],
            logger=logger.getChild("decoder"),
        )
        self.sink = AudioSink(
            sample_rate=audio["sample_rate"],
            channels=audio["channels"],
            block_frames=audio["block_frames"],
            volume=audio["initial_volume"],
            max_volume=audio["max_volume"],
            logger=logger.getChild("sink"),
        )
        self.state = PlaybackState(volume=self.sink.volume(), message_ttl=control["message_ttl"])
        self.bus = ControlBus(self.state, queue_size=control["queue_size"], logger=logger.getChild("control"))
        self.pipeline = PlaybackPipeline(
            self.resolver,
            self.fetcher,
            self.decoder,
            self.sink,
            self.bus,
            self.state,
            failure_delay=pipeline["failure_delay"],
            tick_interval=pipeline["tick_interval"],
            workers=pipeline["prefetch_workers"],
            volume_step=control["volume_step"],
            logger=logger.getChild("pipeline"),
        )

    def _handle_signal(self, signum, frame) -> None:
        self.logger.info(f"Received signal {signum}, shutting down...")
        self.pipeline.stop()

    def _install_signal_handlers(self, headless: bool) -> None:
        # Raw mode delivers Ctrl+C as a key, so the UI only needs SIGTERM.
        signals = (signal.SIGINT, signal.SIGTERM) if headless else (signal.SIGTERM,)
        for signum in signals:
            signal.signal(signum, self._handle_signal)

    def start(self) -> None:
        self.logger.info(f"Starting lofiradio v{VERSION}")
        self.decoder.check_available()
        self.sink.open()
        self.pipeline.start()

    def run(self, headless: bool = False) -> None:
        try:
            self.start()
            self._install_signal_handlers(headless)
            if headless:
                HeadlessMonitor(self.bus, logger=self.logger.getChild("headless")).run()
            else:
                ui = self.config.section("ui")
                TerminalUI(self.bus, width=ui["width"], frame_delta=ui["frame_delta"],
                           alternate=ui["alternate"], logger=self.logger.getChild("ui")).run()
        finally:
            try:
                self.pipeline.stop()
                if not self.pipeline.wait(SHUTDOWN_TIMEOUT):
                    self.logger.warning("Pipeline did not stop in time")
            finally:
                self.fetcher.close()
                self.logger.info("lofiradio stopped")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lofiradio",
        description=f"lofiradio - an endless lofi player v{VERSION}",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("-v", "--volume", type=int, help="Initial volume in percent")
    parser.add_argument("-s", "--source", help="Catalog listing URL or a local track list file")
    parser.add_argument("--no-ui", action="store_true", help="Run headless, logging to the console")
    parser.add_argument("-a", "--alternate", action="store_true", help="Draw the UI on the alternate screen")
    parser.add_argument("--config", help="Path to a JSON config file")
    parser.add_argument("--scrape", action="store_true", help="Print every track in the catalog and exit")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    return parser


def apply_arguments(config: ConfigManager, args: argparse.Namespace) -> None:
    if args.volume is not None:
        max_volume = config.get("audio", "max_volume")
        volume = min(max(args.volume / 100.0, 0.0), max_volume)
        config.update("audio", {"initial_volume": volume})
    if args.source:
        config.update("catalog", {"source": args.source})
    if args.alternate:
        config.update("ui", {"alternate": True})


def scrape(config: ConfigManager, logger: logging.Logger) -> int:
    fetcher = Fetcher.from_config(config.section("fetch"), logger=logger.getChild("fetcher"))
    resolver = TrackResolver.from_config(config.section("catalog"), fetcher, logger=logger.getChild("catalog"))
    try:
        for identifier in resolver.scrape():
            print(identifier)
    except CatalogUnavailable as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        fetcher.close()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    headless = args.no_ui or args.scrape or not sys.stdin.isatty()
    config = ConfigManager(config_file=args.config)
    config.load()
    logger = setup_logging(
        config.get("system", "log_dir"),
        config.get("system", "log_file"),
        console=headless,
        verbose=args.verbose,
    )
    config.logger = logger.getChild("config")
    apply_arguments(config, args)

    if args.scrape:
        return scrape(config, logger)

    if not args.no_ui and headless:
        logger.warning("stdin is not a terminal, running headless")

    try:
        radio = LofiRadio(config, logger)
        radio.run(headless=headless)
    except (StartupError, OutputDeviceError) as e:
        logger.error(f"Fatal: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except LofiRadioError as e:
        logger.exception(f"Unexpected error: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

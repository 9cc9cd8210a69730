import logging
import os
import re
import select
import sys
import threading
from typing import List, Optional, TextIO, Tuple

from lofiradio import LOGGER_NAME
from lofiradio.config import FRAME_DELTA, UI_WIDTH
from lofiradio.control import Command, ControlBus, StatusSnapshot

# Progress bar width, not counting the brackets or padding.
PROGRESS_PADDING = 16
FINE_VOLUME_STEP = 0.01


class Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    YELLOW = "\033[33m"


class Term:
    HIDE_CURSOR = "\033[?25l"
    SHOW_CURSOR = "\033[?25h"
    CLEAR_DOWN = "\033[J"
    COLUMN_ZERO = "\033[1G"
    ENTER_ALTERNATE = "\033[?1049h\033[H"
    LEAVE_ALTERNATE = "\033[?1049l"

    @staticmethod
    def up(lines: int) -> str:
        return f"\033[{lines}A"


KEY_BINDINGS = {
    "s": Command.skip,
    "p": Command.pause,
    "q": Command.quit,
    "\x03": Command.quit,  # Ctrl+C in raw mode
    "+": Command.volume_up,
    "=": Command.volume_up,
    "-": Command.volume_down,
    "_": Command.volume_down,
    ">": lambda: Command.volume_change(FINE_VOLUME_STEP),
    ".": lambda: Command.volume_change(FINE_VOLUME_STEP),
    "<": lambda: Command.volume_change(-FINE_VOLUME_STEP),
    ",": lambda: Command.volume_change(-FINE_VOLUME_STEP),
    "\x1b[A": Command.volume_up,   # up
    "\x1b[C": Command.volume_up,   # right
    "\x1b[B": Command.volume_down,  # down
    "\x1b[D": Command.volume_down,  # left
}

# One escape sequence (arrow keys) or one character.
KEY_PATTERN = re.compile(r"\x1b\[[0-9;]*[A-Za-z~]|.", re.DOTALL)
READ_SIZE = 64


def split_keys(data: str) -> List[str]:
    """Split one read from the terminal into individual key presses."""
    return KEY_PATTERN.findall(data)


def translate_key(key: str) -> Optional[Command]:
    factory = KEY_BINDINGS.get(key)
    return factory() if factory else None


def format_duration(seconds: Optional[float]) -> str:
    total = int(seconds or 0)
    return f"{total // 60:02}:{total % 60:02}"


def action_bar(snapshot: StatusSnapshot, width: int = UI_WIDTH) -> str:
    """The "playing <title>      Volume: N%" line, padded to ``width``."""
    volume = f" Volume: {round(snapshot.volume * 100)}% "
    available = max(width - len(volume), 0)

    if snapshot.title is None:
        word, subject = "loading", None
    else:
        word, subject = ("paused" if snapshot.paused else "playing"), snapshot.title

    if subject is None:
        plain = word[:available]
        return plain + " " * (available - len(plain)) + volume

    room = available - len(word) - 1
    if room < 0:
        plain = word[:available]
        return plain + " " * (available - len(plain)) + volume
    if len(subject) > room:
        subject = subject[: max(room - 3, 0)] + "..."
        subject = subject[:room]

    length = len(word) + 1 + len(subject)
    return f"{word} {Colors.BOLD}{subject}{Colors.RESET}" + " " * (available - length) + volume


def progress_bar(snapshot: StatusSnapshot, width: int = UI_WIDTH) -> str:
    progress_width = max(width - PROGRESS_PADDING, 0)
    filled = 0
    if snapshot.duration:
        ratio = min(max(snapshot.elapsed / snapshot.duration, 0.0), 1.0)
        filled = round(ratio * progress_width)
    return (
        f" [{'/' * filled}{' ' * (progress_width - filled)}] "
        f"{format_duration(snapshot.elapsed)}/{format_duration(snapshot.duration)} "
    )


def legend(snapshot: StatusSnapshot) -> str:
    if snapshot.message:
        return f"{Colors.YELLOW}{snapshot.message}{Colors.RESET}"
    bold = Colors.BOLD
    reset = Colors.RESET
    return "    ".join([
        f"{bold}[s]{reset}kip",
        f"{bold}[p]{reset}ause",
        f"{bold}[q]{reset}uit",
        f"volume {bold}[+/-]{reset}",
    ])


def render(snapshot: StatusSnapshot, width: int = UI_WIDTH) -> List[str]:
    rows = [action_bar(snapshot, width), progress_bar(snapshot, width), legend(snapshot)]
    lines = [f"┌{'─' * (width + 2)}┐"]
    lines.extend(f"│ {row}{Colors.RESET} │" for row in rows)
    lines.append(f"└{'─' * (width + 2)}┘")
    return lines


class TerminalUI:
    def __init__(self, bus: ControlBus, width: int = UI_WIDTH, frame_delta: float = FRAME_DELTA,
                 alternate: bool = False, stream: TextIO = sys.stderr,
                 logger: Optional[logging.Logger] = None):
        self.bus = bus
        self.width = width
        self.frame_delta = frame_delta
        self.alternate = alternate
        self.stream = stream
        self.logger = logger or logging.getLogger(f"{LOGGER_NAME}.ui")
        self.running = threading.Event()
        self._wake = threading.Event()
        self.render_thread: Optional[threading.Thread] = None

    def draw(self) -> None:
        lines = render(self.bus.snapshot(), self.width)
        self.stream.write(Term.CLEAR_DOWN + Term.COLUMN_ZERO + "\r\n".join(lines)
                          + Term.COLUMN_ZERO + Term.up(len(lines) - 1))
        self.stream.flush()

    def _render_loop(self) -> None:
        while self.running.is_set() and not self.bus.closed:
            try:
                self.draw()
            except (OSError, ValueError) as e:
                self.logger.error(f"Render error: {e}")
                break
            self._wake.wait(self.frame_delta)

    def handle_key(self, key: str) -> bool:
        """Submit the command bound to ``key``; return False once quitting."""
        command = translate_key(key)
        if command is None:
            return True
        if command == Command.skip() and self.bus.snapshot().loading:
            return True
        self.bus.submit(command)
        return command != Command.quit()

    def handle_input(self, data: str) -> bool:
        """Handle every key in one terminal read; stop at the first quit."""
        for key in split_keys(data):
            if not self.handle_key(key):
                return False
        return True

    def run(self) -> None:
        import termios
        import tty

        fd = sys.stdin.fileno()
        old_settings = termios.tcgetattr(fd)
        self.stream.write(Term.HIDE_CURSOR)
        if self.alternate:
            self.stream.write(Term.ENTER_ALTERNATE)
        self.stream.flush()

        self.running.set()
        self.render_thread = threading.Thread(target=self._render_loop, daemon=True, name="RenderThread")
        self.render_thread.start()

        try:
            tty.setraw(fd)
            while not self.bus.closed:
                if not select.select([fd], [], [], 0.1)[0]:
                    continue
                data = os.read(fd, READ_SIZE).decode("utf-8", errors="ignore")
                if not self.handle_input(data):
                    break
        finally:
            termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)
            self.running.clear()
            self._wake.set()
            if self.render_thread:
                self.render_thread.join(timeout=1)
            if self.alternate:
                self.stream.write(Term.LEAVE_ALTERNATE)
            self.stream.write(Term.CLEAR_DOWN + Term.SHOW_CURSOR)
            self.stream.flush()


class HeadlessMonitor:
    """Logs track changes and transient failures when no UI is drawn."""

    def __init__(self, bus: ControlBus, interval: float = 1.0, logger: Optional[logging.Logger] = None):
        self.bus = bus
        self.interval = interval
        self.logger = logger or logging.getLogger(f"{LOGGER_NAME}.headless")
        self.stopped = threading.Event()
        self._last: Tuple[Optional[str], int] = (None, 0)
        self._last_message: Optional[str] = None

    def poll(self) -> None:
        snapshot = self.bus.snapshot()
        key = (snapshot.title, snapshot.tracks_played)
        if snapshot.title is not None and key != self._last:
            duration = format_duration(snapshot.duration)
            self.logger.info(f"Now playing: {snapshot.title} [{duration}] (#{snapshot.tracks_played})")
            self._last = key
        if snapshot.message and snapshot.message != self._last_message:
            self.logger.warning(snapshot.message)
        self._last_message = snapshot.message

    def run(self) -> None:
        while not self.bus.closed and not self.stopped.is_set():
            self.poll()
            self.stopped.wait(self.interval)

    def stop(self) -> None:
        self.stopped.set()

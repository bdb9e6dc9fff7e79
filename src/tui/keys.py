"""
Raw keyboard input from the controlling terminal, read on a background thread
and handed to the event loop as named keys.
"""
import logging
import os
import select
import sys
import termios
import threading
import tty
from typing import Callable, Optional

logger = logging.getLogger(__name__)

ESCAPE_SEQUENCES = {
    "[A": "UP",
    "[B": "DOWN",
    "[C": "RIGHT",
    "[D": "LEFT",
    "OA": "UP",
    "OB": "DOWN",
    "OC": "RIGHT",
    "OD": "LEFT",
    "[5~": "PGUP",
    "[6~": "PGDN",
    "[H": "g",
    "[F": "G",
    "[Z": "SHTAB",
}


def decode_key(first: str, sequence: str = "") -> str:
    """Map a raw character (plus any escape-sequence tail) to a key name."""
    if first in ("\r", "\n"):
        return "ENTER"
    if first == "\t":
        return "TAB"
    if first in ("\x7f", "\b"):
        return "BACKSPACE"
    if first in ("\x03", "\x04"):
        return "QUIT"
    if first == "\x1b":
        return ESCAPE_SEQUENCES.get(sequence, "ESC")
    return first


class KeyReader:
    """Puts the terminal in cbreak mode and reports keys via `on_key` until stopped."""

    def __init__(self, on_key: Callable[[str], None], poll_interval: float = 0.2):
        self.on_key = on_key
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if not sys.stdin.isatty():
            raise RuntimeError("termfeed needs an interactive terminal on stdin")
        self._thread = threading.Thread(target=self._run, name="key-reader", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)

    def _run(self) -> None:
        fd = sys.stdin.fileno()
        old_settings = termios.tcgetattr(fd)
        try:
            tty.setcbreak(fd)
            while not self._stop.is_set():
                ready, _, _ = select.select([fd], [], [], self.poll_interval)
                if not ready:
                    continue
                data = os.read(fd, 1)
                if not data:
                    continue
                key = data.decode("utf-8", errors="ignore")
                if not key:
                    continue
                sequence = ""
                if key == "\x1b":
                    while select.select([fd], [], [], 0.01)[0]:
                        sequence += os.read(fd, 1).decode("utf-8", errors="ignore")
                        if sequence and (sequence[-1].isalpha() or sequence.endswith("~") or len(sequence) >= 6):
                            break
                self.on_key(decode_key(key, sequence))
        finally:
            termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)

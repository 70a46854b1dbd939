"""Character I/O collaborators for the VM.

The processor only talks to a `Keyboard` (non-blocking poll + blocking read)
and a `Display` (character sink). Terminal handling lives here.
"""

from __future__ import annotations

import logging
import os
import select
import sys
import termios
import tty
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from typing import Any, TextIO


class Keyboard(ABC):
    """Input side: `poll` never blocks, `getc` may."""

    @abstractmethod
    def poll(self) -> bool:
        """Return True when a character can be read without blocking."""

    @abstractmethod
    def getc(self) -> int:
        """Return the next character code. Raise EOFError when input is over."""


class Display(ABC):
    """Output side: a plain character sink."""

    @abstractmethod
    def putc(self, ch: int) -> None:
        """Write one character code."""

    def write(self, text: str) -> None:
        for c in text:
            self.putc(ord(c))


class ScheduledKeyboard(Keyboard):
    """Scripted keyboard.

    `schedule` is either a string (every character available immediately) or a
    list of (tick, char) events. With a `clock` the event becomes visible to
    `poll` only once clock() >= tick; `getc` never waits, it just takes the
    next event, the way a blocking read would eventually return it.
    """

    events: list[tuple[int, str]]
    clock: Callable[[], int] | None

    def __init__(
        self,
        schedule: str | Iterable[tuple[int, str]] = "",
        clock: Callable[[], int] | None = None,
    ) -> None:
        if isinstance(schedule, str):
            self.events = [(0, ch) for ch in schedule]
        else:
            self.events = [(int(t), str(ch)) for t, ch in schedule]
            self.events.sort(key=lambda e: e[0])
        self.clock = clock

    def _now(self) -> int | None:
        return self.clock() if self.clock is not None else None

    def poll(self) -> bool:
        if not self.events:
            return False
        now = self._now()
        return now is None or self.events[0][0] <= now

    def getc(self) -> int:
        if not self.events:
            err = "No more scheduled input"
            raise EOFError(err)
        tick, ch = self.events.pop(0)
        ch0 = ch[0] if ch else " "
        logging.debug("[keyboard] delivered %r (scheduled for tick %d)", ch0, tick)
        return ord(ch0) & 0xFF


class TerminalKeyboard(Keyboard):
    """Keyboard reading the controlling terminal in cbreak mode (no echo, no line buffering).

    Use as a context manager so the terminal mode is always restored.
    When the stream is not a tty it is read as-is.
    """

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream if stream is not None else sys.stdin
        self.fd = self.stream.fileno()
        self._saved: list[Any] | None = None

    def __enter__(self) -> TerminalKeyboard:
        self.open()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def open(self) -> None:
        if not os.isatty(self.fd):
            return
        self._saved = termios.tcgetattr(self.fd)
        tty.setcbreak(self.fd)
        logging.debug("[keyboard] terminal switched to cbreak mode")

    def close(self) -> None:
        if self._saved is None:
            return
        termios.tcsetattr(self.fd, termios.TCSADRAIN, self._saved)
        self._saved = None
        logging.debug("[keyboard] terminal mode restored")

    def poll(self) -> bool:
        ready, _, _ = select.select([self.fd], [], [], 0)
        return bool(ready)

    def getc(self) -> int:
        data = os.read(self.fd, 1)
        if not data:
            err = "End of terminal input"
            raise EOFError(err)
        return data[0]


class StreamDisplay(Display):
    """Writes characters to a text stream (stdout by default), flushing each time."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream if stream is not None else sys.stdout

    def putc(self, ch: int) -> None:
        self.stream.write(chr(ch & 0xFF))
        self.stream.flush()

    def write(self, text: str) -> None:
        self.stream.write(text)
        self.stream.flush()

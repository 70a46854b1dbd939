"""Tests for the keyboard/display collaborators."""

import io
import os

import pytest
from devices import Display, Keyboard, ScheduledKeyboard, StreamDisplay, TerminalKeyboard


def test_string_schedule_is_available_at_once() -> None:
    kb = ScheduledKeyboard("ab")
    assert kb.poll()
    assert kb.getc() == ord("a")
    assert kb.getc() == ord("b")
    assert not kb.poll()
    with pytest.raises(EOFError):
        kb.getc()


def test_timed_schedule_respects_clock() -> None:
    now = [0]
    kb = ScheduledKeyboard([(3, "y"), (1, "x")], clock=lambda: now[0])
    assert not kb.poll()
    now[0] = 1
    assert kb.poll()
    assert kb.getc() == ord("x")
    assert not kb.poll()
    # a blocking read does not wait for the clock
    assert kb.getc() == ord("y")


def test_empty_char_reads_as_space() -> None:
    assert ScheduledKeyboard([(0, "")]).getc() == ord(" ")


def test_stream_display() -> None:
    buf = io.StringIO()
    d = StreamDisplay(buf)
    d.putc(0x141)  # only the low byte counts
    d.write("bc")
    assert buf.getvalue() == "Abc"


def test_terminal_keyboard_on_pipe() -> None:
    r, w = os.pipe()
    with os.fdopen(r, "r") as rf:
        with TerminalKeyboard(rf) as kb:
            assert not kb.poll()
            os.write(w, b"k")
            assert kb.poll()
            assert kb.getc() == ord("k")
            os.close(w)
            with pytest.raises(EOFError):
                kb.getc()


def test_collaborator_bases_are_abstract() -> None:
    class NoGetc(Keyboard):
        def poll(self) -> bool:
            return False

    with pytest.raises(TypeError):
        Keyboard()  # type: ignore[abstract]
    with pytest.raises(TypeError):
        Display()  # type: ignore[abstract]
    with pytest.raises(TypeError):
        NoGetc()  # type: ignore[abstract]


def test_display_write_goes_through_putc() -> None:
    class Recorder(Display):
        def __init__(self) -> None:
            self.codes: list[int] = []

        def putc(self, ch: int) -> None:
            self.codes.append(ch)

    d = Recorder()
    d.write("hi")
    assert d.codes == [ord("h"), ord("i")]

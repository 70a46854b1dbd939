"""Tests for the program image loader."""

import io
import logging
from pathlib import Path

import pytest
from isa import PC_START, pack_image
from loader import LoadError, load_image, read_origin
from processor import Datapath


def test_load_from_stream_sets_memory_and_keeps_pc() -> None:
    dp = Datapath()
    origin, count = load_image(io.BytesIO(pack_image(0x3000, [0x1001, 0x1002])), dp)
    assert (origin, count) == (0x3000, 2)
    assert dp.read_word(0x3000) == 0x1001
    assert dp.read_word(0x3001) == 0x1002
    assert dp.read_word(0x3002) == 0
    assert dp.PC == PC_START


def test_load_from_path(tmp_path: Path) -> None:
    image = tmp_path / "prog.obj"
    image.write_bytes(pack_image(0x4000, [0xABCD]))
    dp = Datapath()
    assert load_image(str(image), dp) == (0x4000, 1)
    assert dp.read_word(0x4000) == 0xABCD


def test_missing_file_raises_load_error(tmp_path: Path) -> None:
    with pytest.raises(LoadError) as exc:
        load_image(tmp_path / "nope.obj", Datapath())
    assert isinstance(exc.value.__cause__, OSError)


@pytest.mark.parametrize("blob", [b"", b"\x30"])
def test_missing_origin_raises_load_error(blob: bytes) -> None:
    with pytest.raises(LoadError, match="origin"):
        load_image(io.BytesIO(blob), Datapath())


def test_origin_only_image_loads_nothing() -> None:
    dp = Datapath()
    assert load_image(io.BytesIO(b"\x30\x00"), dp) == (0x3000, 0)


def test_truncated_last_word_is_ignored() -> None:
    dp = Datapath()
    blob = pack_image(0x3000, [0x1234]) + b"\x56"
    assert load_image(io.BytesIO(blob), dp) == (0x3000, 1)
    assert dp.read_word(0x3001) == 0


def test_read_origin() -> None:
    assert read_origin(b"\xfe\x00\x12") == 0xFE00


def test_overflow_error_leaves_memory_untouched() -> None:
    dp = Datapath()
    with pytest.raises(LoadError, match="does not fit"):
        load_image(io.BytesIO(pack_image(0xFFFE, [1, 2, 3])), dp)
    assert dp.read_word(0xFFFE) == 0


def test_overflow_truncate(caplog: pytest.LogCaptureFixture) -> None:
    dp = Datapath()
    with caplog.at_level(logging.WARNING):
        assert load_image(io.BytesIO(pack_image(0xFFFE, [1, 2, 3])), dp, overflow="truncate") == (0xFFFE, 2)
    assert dp.read_word(0xFFFF) == 2
    assert dp.read_word(0x0000) == 0
    assert "truncated" in caplog.text


def test_overflow_wrap() -> None:
    dp = Datapath()
    assert load_image(io.BytesIO(pack_image(0xFFFE, [1, 2, 3])), dp, overflow="wrap") == (0xFFFE, 3)
    assert dp.read_word(0xFFFF) == 2
    assert dp.read_word(0x0000) == 3

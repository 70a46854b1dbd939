"""Program image loader.

An image is a stream of big-endian 16-bit words. The first word is the
origin; the remaining words are copied into memory starting there.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from isa import MEMORY_SIZE, WORD, unpack_words

if TYPE_CHECKING:
    from processor import Datapath


class LoadError(Exception):
    """Raised when a program image cannot be opened or has no origin."""

    pass


def read_origin(blob: bytes) -> int:
    """Return the origin word of an image or raise LoadError."""
    if len(blob) < WORD.size:
        msg = f"Image too short: missing origin word ({len(blob)} bytes)"
        raise LoadError(msg)
    (origin,) = WORD.unpack_from(blob, 0)
    return int(origin)


def _read_source(source: str | Path | BinaryIO) -> bytes:
    if isinstance(source, (str, Path)):
        try:
            with open(source, "rb") as f:
                return f.read()
        except OSError as e:
            msg = f"Cannot open image {source}: {e}"
            raise LoadError(msg) from e
    try:
        return source.read()
    except OSError as e:
        msg = f"Cannot read image stream: {e}"
        raise LoadError(msg) from e


def load_image(source: str | Path | BinaryIO, dp: Datapath, overflow: str = "error") -> tuple[int, int]:
    """Copy an image into `dp` memory.

    `overflow` decides what happens to words that would land past 0xFFFF:
      - "error"    -> raise LoadError before touching memory
      - "truncate" -> drop the excess words
      - "wrap"     -> continue storing at 0x0000

    Returns (origin, number_of_words_stored).
    """
    blob = _read_source(source)
    origin = read_origin(blob)
    words = unpack_words(blob[WORD.size :])
    if len(blob) % WORD.size:
        logging.debug("Loader: ignoring trailing odd byte")

    room = MEMORY_SIZE - origin
    if len(words) > room:
        if overflow == "error":
            msg = f"Image does not fit: {len(words)} words at origin 0x{origin:04X} (room for {room})"
            raise LoadError(msg)
        if overflow == "truncate":
            logging.warning("Loader: image truncated from %d to %d words", len(words), room)
            words = words[:room]
        else:
            logging.warning("Loader: image wraps past 0xFFFF (%d words at 0x%04X)", len(words), origin)

    addr = origin
    for w in words:
        dp.write_word(addr, w)
        addr = (addr + 1) % MEMORY_SIZE

    logging.debug("Loader: origin 0x%04X, %d words loaded", origin, len(words))
    return origin, len(words)

"""Processor (Datapath + ControlUnit) and CLI wrapper.

Provides LC-3 program execution, logging initialization and an optional
memory dump of the final machine state.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from array import array
from collections.abc import Iterator
from pathlib import Path
from typing import Any, BinaryIO, TextIO

from config import ConfigError, load_config
from devices import Display, Keyboard, ScheduledKeyboard, StreamDisplay, TerminalKeyboard
from isa import (
    FLAG_SETTING,
    KBDR,
    KBSR,
    MEMORY_SIZE,
    PC_START,
    WORD_MASK,
    Flag,
    OpCode,
    Register,
    TrapVector,
    decode_instr,
    flag_name,
    mnemonic,
    sign_extend,
    to_signed,
)
from loader import LoadError, load_image

LOGFILE = "lc3vm.log"


class MachineError(Exception):
    """Fatal condition raised while executing a program."""

    pass


class UnimplementedOpcodeError(MachineError):
    """RTI or the reserved opcode was fetched."""

    pass


class UnknownTrapError(MachineError):
    """TRAP with a vector that has no routine."""

    pass


class InputError(MachineError):
    """The keyboard failed during GETC/IN or a KBSR poll."""

    pass


def init_logging(logfile: str = LOGFILE, debug: bool = False, console: bool = False) -> None:
    """Configure root logger to write to `logfile`.

    If debug=True set DEBUG level. If console=True also echo logs to stderr.

    In debug mode a compact format without timestamp is used:
        DEBUG root:processor.py:301 STATE: RUNNING  STEP: COMMAND_FETCH ...
    """
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    lvl = logging.DEBUG if debug else logging.CRITICAL
    root.setLevel(lvl)

    if debug:
        file_fmt = "%(levelname)s %(name)s:%(filename)s:%(lineno)d %(message)s"
    else:
        file_fmt = "%(levelname)-5s %(message)s"

    # First record flush left, every following record indented by 4 spaces.
    class _IndentOnceFormatter(logging.Formatter):
        def __init__(self, fmt: str | None = None):
            super().__init__(fmt)
            self._seen_first = False

        def format(self, record: logging.LogRecord) -> str:
            s = super().format(record)
            if not self._seen_first:
                self._seen_first = True
                return s
            return "    " + s

    fh = logging.FileHandler(logfile, mode="w", encoding="utf-8")
    fh.setLevel(lvl)
    if debug:
        fh.setFormatter(_IndentOnceFormatter(file_fmt))
    else:
        fh.setFormatter(logging.Formatter(file_fmt))
    root.addHandler(fh)

    if debug and console:
        # stderr: stdout belongs to the running program
        ch = logging.StreamHandler(sys.stderr)
        ch.setLevel(lvl)
        ch.setFormatter(logging.Formatter("%(levelname)5s %(message)s"))
        root.addHandler(ch)


def _flush_logging_handlers() -> None:
    for h in list(logging.getLogger().handlers):
        h.flush()


class Datapath:
    """Datapath: memory, register file, condition flag and memory-mapped keyboard."""

    memory: array
    registers: list[int]
    PC: int
    COND: int

    keyboard: Keyboard
    display: Display | None
    kbsr: int
    kbdr: int
    in_prompt: str
    halt_message: str
    lenient_log: bool

    tick: int
    halted: bool
    output_buffer: list[str]

    def __init__(
        self,
        keyboard: Keyboard | None = None,
        display: Display | None = None,
        pc_start: int = PC_START,
        kbsr: int = KBSR,
        kbdr: int = KBDR,
        in_prompt: str = "Enter a character: ",
        halt_message: str = "HALT\n",
        lenient_log: bool = False,
    ) -> None:
        """Initialize all-zero machine state with PC at `pc_start`."""
        self.memory = array("H", [0]) * MEMORY_SIZE
        self.registers = [0] * 8
        self.PC = pc_start & WORD_MASK
        self.COND = 0

        self.keyboard = keyboard if keyboard is not None else ScheduledKeyboard()
        self.display = display
        self.kbsr = kbsr & WORD_MASK
        self.kbdr = kbdr & WORD_MASK
        self.in_prompt = in_prompt
        self.halt_message = halt_message
        self.lenient_log = bool(lenient_log)

        self.tick = 0
        self.halted = False
        self.output_buffer = []
        logging.debug("Datapath: PC initialized to 0x%04X", self.PC)

    # --- raw memory ---
    def read_word(self, addr: int) -> int:
        """Read a memory cell without side effects."""
        return self.memory[addr & WORD_MASK]

    def write_word(self, addr: int, value: int) -> None:
        """Store a 16-bit value; no address is protected."""
        self.memory[addr & WORD_MASK] = value & WORD_MASK

    # --- keyboard ---
    def _input_error(self, e: Exception) -> InputError:
        pc = (self.PC - 1) & WORD_MASK
        msg = f"Keyboard input failed at 0x{pc:04X}: {e}"
        return InputError(msg)

    def key_ready(self) -> bool:
        """Non-blocking keyboard poll; device failures become InputError."""
        try:
            return self.keyboard.poll()
        except OSError as e:
            raise self._input_error(e) from e

    def read_key(self) -> int:
        """Blocking keyboard read of one byte; EOF and device failures become InputError."""
        try:
            return self.keyboard.getc() & 0xFF
        except (EOFError, OSError) as e:
            raise self._input_error(e) from e

    # --- memory-mapped access ---
    def mem_read_word(self, addr: int) -> int:
        """Read a word, refreshing KBSR/KBDR from the keyboard when KBSR is read."""
        addr &= WORD_MASK
        if addr == self.kbsr:
            if self.key_ready():
                ch = self.read_key()
                self.write_word(self.kbsr, 1 << 15)
                self.write_word(self.kbdr, ch)
                logging.debug("[MMIO KBSR] key ready: %d", ch)
            else:
                self.write_word(self.kbsr, 0)
        return self.read_word(addr)

    def mem_write_word(self, addr: int, value: int) -> None:
        self.write_word(addr, value)

    # --- registers ---
    def read_reg(self, r: int) -> int:
        """Read R0..R7, PC or COND by symbolic index."""
        if r == Register.PC:
            return self.PC
        if r == Register.COND:
            return self.COND
        return self.registers[r]

    def write_reg(self, r: int, value: int) -> None:
        value &= WORD_MASK
        if r == Register.PC:
            self.PC = value
        elif r == Register.COND:
            self.COND = value
        else:
            self.registers[r] = value

    def update_flags(self, r: int) -> None:
        """Set COND from register `r`: ZRO, NEG (bit 15) or POS."""
        value = self.registers[r]
        if value == 0:
            self.COND = Flag.ZRO
        elif value >> 15:
            self.COND = Flag.NEG
        else:
            self.COND = Flag.POS

    # --- output ---
    def emit_char(self, ch: int) -> None:
        """Send one character (low byte of `ch`) to the display."""
        ch &= 0xFF
        self.output_buffer.append(chr(ch))
        if self.display is not None:
            self.display.putc(ch)

    def emit(self, text: str) -> None:
        if not text:
            return
        self.output_buffer.append(text)
        if self.display is not None:
            self.display.write(text)


class ControlUnit:
    """Control unit implementing the FETCH-DECODE-EXEC loop for the Datapath."""

    dp: Datapath
    stop_event: threading.Event

    def __init__(self, dp: Datapath, stop_event: threading.Event | None = None) -> None:
        """Create a ControlUnit bound to `dp`."""
        self.dp = dp
        self.stop_event = stop_event if stop_event is not None else threading.Event()
        self._handlers = {
            OpCode.BR: self._br,
            OpCode.ADD: self._add,
            OpCode.LD: self._ld,
            OpCode.ST: self._st,
            OpCode.JSR: self._jsr,
            OpCode.AND: self._and,
            OpCode.LDR: self._ldr,
            OpCode.STR: self._str,
            OpCode.NOT: self._not,
            OpCode.LDI: self._ldi,
            OpCode.STI: self._sti,
            OpCode.JMP: self._jmp,
            OpCode.LEA: self._lea,
            OpCode.TRAP: self._trap,
        }

    def request_stop(self) -> None:
        """Ask the loop to stop before the next fetch. Safe from signal handlers and other threads."""
        self.stop_event.set()

    def _log_step(self, state: str, step: str, instr: str) -> None:
        if self.dp.lenient_log or not logging.getLogger().isEnabledFor(logging.DEBUG):
            return
        dp = self.dp
        left = f"STATE: {state:<8} STEP: {step:<14} TICK: {dp.tick:5d} PC: 0x{dp.PC:04X} "
        regs = " ".join(f"R{i}: 0x{v:04X}" for i, v in enumerate(dp.registers))
        logging.debug(left + regs + f" COND: {flag_name(dp.COND)}\tINSTR: {instr}")

    def run(self) -> tuple[str, int, str]:
        """Execute until HALT or a stop request.

        Returns (output, ticks, state) where state is "halted" or "stopped".
        MachineError subclasses propagate to the caller.
        """
        dp = self.dp
        state = "halted"
        while not dp.halted:
            if self.stop_event.is_set():
                logging.debug("[tick %d] stop requested -> leaving loop before fetch", dp.tick)
                state = "stopped"
                break
            try:
                self.step()
            except MachineError as e:
                logging.debug("[tick %d] fatal: %s", dp.tick, e)
                raise
        if state == "halted":
            logging.debug("HALT after %d instructions", dp.tick)
        return "".join(dp.output_buffer), dp.tick, state

    def step(self) -> None:
        """Run one fetch-decode-execute cycle."""
        dp = self.dp
        self._log_step("RUNNING", "COMMAND_FETCH", "fetch")
        instr = dp.mem_read_word(dp.PC)
        dp.PC = (dp.PC + 1) & WORD_MASK
        opcode, _ = decode_instr(instr)
        self.exec(opcode, instr)
        self._log_step("RUNNING", "EXECUTION", mnemonic(opcode, instr))
        dp.tick += 1

    def exec(self, opcode: OpCode, instr: int) -> None:
        """Execute a single, already fetched instruction."""
        handler = self._handlers.get(opcode)
        if handler is None:
            pc = (self.dp.PC - 1) & WORD_MASK
            msg = f"Unimplemented opcode {opcode.name} (0x{instr:04X}) at 0x{pc:04X}"
            raise UnimplementedOpcodeError(msg)
        handler(instr)
        if opcode in FLAG_SETTING:
            self.dp.update_flags((instr >> 9) & 0x7)

    # --- instruction semantics ---
    def _br(self, instr: int) -> None:
        dp = self.dp
        nzp = (instr >> 9) & 0x7
        if nzp & dp.COND:
            dp.PC = (dp.PC + sign_extend(instr, 9)) & WORD_MASK

    def _add(self, instr: int) -> None:
        dp = self.dp
        sr1 = (instr >> 6) & 0x7
        if (instr >> 5) & 0x1:
            operand = sign_extend(instr, 5)
        else:
            operand = dp.registers[instr & 0x7]
        dp.write_reg((instr >> 9) & 0x7, dp.registers[sr1] + operand)

    def _and(self, instr: int) -> None:
        dp = self.dp
        sr1 = (instr >> 6) & 0x7
        if (instr >> 5) & 0x1:
            operand = sign_extend(instr, 5)
        else:
            operand = dp.registers[instr & 0x7]
        dp.write_reg((instr >> 9) & 0x7, dp.registers[sr1] & operand)

    def _not(self, instr: int) -> None:
        dp = self.dp
        dp.write_reg((instr >> 9) & 0x7, ~dp.registers[(instr >> 6) & 0x7])

    def _ld(self, instr: int) -> None:
        dp = self.dp
        dp.write_reg((instr >> 9) & 0x7, dp.mem_read_word(dp.PC + sign_extend(instr, 9)))

    def _ldi(self, instr: int) -> None:
        dp = self.dp
        pointer = dp.mem_read_word(dp.PC + sign_extend(instr, 9))
        dp.write_reg((instr >> 9) & 0x7, dp.mem_read_word(pointer))

    def _ldr(self, instr: int) -> None:
        dp = self.dp
        base = dp.registers[(instr >> 6) & 0x7]
        dp.write_reg((instr >> 9) & 0x7, dp.mem_read_word(base + sign_extend(instr, 6)))

    def _lea(self, instr: int) -> None:
        dp = self.dp
        dp.write_reg((instr >> 9) & 0x7, dp.PC + sign_extend(instr, 9))

    def _st(self, instr: int) -> None:
        dp = self.dp
        dp.mem_write_word(dp.PC + sign_extend(instr, 9), dp.registers[(instr >> 9) & 0x7])

    def _sti(self, instr: int) -> None:
        dp = self.dp
        pointer = dp.mem_read_word(dp.PC + sign_extend(instr, 9))
        dp.mem_write_word(pointer, dp.registers[(instr >> 9) & 0x7])

    def _str(self, instr: int) -> None:
        dp = self.dp
        base = dp.registers[(instr >> 6) & 0x7]
        dp.mem_write_word(base + sign_extend(instr, 6), dp.registers[(instr >> 9) & 0x7])

    def _jmp(self, instr: int) -> None:
        dp = self.dp
        dp.PC = dp.registers[(instr >> 6) & 0x7]

    def _jsr(self, instr: int) -> None:
        dp = self.dp
        if (instr >> 11) & 0x1:
            target = dp.PC + sign_extend(instr, 11)
        else:
            # JSRR: base is read before R7 is overwritten
            target = dp.registers[(instr >> 6) & 0x7]
        dp.registers[7] = dp.PC
        dp.PC = target & WORD_MASK

    def _trap(self, instr: int) -> None:
        self.trap(instr & 0xFF)

    # --- trap routines ---
    def _word_string(self, addr: int) -> Iterator[int]:
        """Yield one character per word until a zero word."""
        while True:
            word = self.dp.mem_read_word(addr)
            if word == 0:
                return
            yield word & 0xFF
            addr = (addr + 1) & WORD_MASK

    def _byte_string(self, addr: int) -> Iterator[int]:
        """Yield two characters per word (low byte first) until a zero byte."""
        while True:
            word = self.dp.mem_read_word(addr)
            for ch in (word & 0xFF, word >> 8):
                if ch == 0:
                    return
                yield ch
            addr = (addr + 1) & WORD_MASK

    def trap(self, vector: int) -> None:
        """Dispatch a trap routine by vector."""
        dp = self.dp
        if vector == TrapVector.GETC:
            dp.registers[0] = dp.read_key()
        elif vector == TrapVector.OUT:
            dp.emit_char(dp.registers[0])
        elif vector == TrapVector.PUTS:
            for ch in self._word_string(dp.registers[0]):
                dp.emit_char(ch)
        elif vector == TrapVector.IN:
            dp.emit(dp.in_prompt)
            dp.registers[0] = dp.read_key()
        elif vector == TrapVector.PUTSP:
            for ch in self._byte_string(dp.registers[0]):
                dp.emit_char(ch)
        elif vector == TrapVector.HALT:
            dp.emit(dp.halt_message)
            dp.halted = True
            logging.debug("TRAP HALT encountered")
        else:
            pc = (dp.PC - 1) & WORD_MASK
            msg = f"Unknown trap vector 0x{vector:02X} at 0x{pc:04X}"
            raise UnknownTrapError(msg)

    def _dump_memory_to_file(self, path: str) -> None:
        dp = self.dp
        with open(path, "w", encoding="utf-8") as f:
            f.write("=== MEMORY DUMP ===\n")
            f.write(f"PC: 0x{dp.PC:04X}  COND: {flag_name(dp.COND)}  ticks: {dp.tick}\n")
            for i, v in enumerate(dp.registers):
                f.write(f"R{i}: 0x{v:04X}  ({to_signed(v)})\n")
            f.write("\n=== NON-ZERO WORDS ===\n")
            for addr, w in enumerate(dp.memory):
                if w:
                    f.write(f"{addr:04X}: {w:04X}  ({to_signed(w)})\n")
            f.write("\n=== END DUMP ===\n")


# ---------- Public API ----------
def make_datapath(
    cfg: dict[str, Any],
    keyboard: Keyboard | None = None,
    display: Display | None = None,
) -> Datapath:
    """Build a Datapath from a normalized config dict."""
    return Datapath(
        keyboard=keyboard,
        display=display,
        pc_start=cfg["pc_start"],
        kbsr=cfg["kbsr"],
        kbdr=cfg["kbdr"],
        in_prompt=cfg["in_prompt"],
        halt_message=cfg["halt_message"],
        lenient_log=cfg["lenient_log"],
    )


def run_image(
    image: str | Path | BinaryIO,
    config: str | dict[str, Any] | None = None,
    keyboard: Keyboard | None = None,
    display: Display | None = None,
    schedule: list[tuple[int, str]] | None = None,
    stop_event: threading.Event | None = None,
    dump_path: str | None = None,
) -> tuple[str, int, str]:
    """Load an image and run it. Return (output, ticks, state).

    `schedule` ((tick, char) events) replaces `keyboard` with a ScheduledKeyboard
    clocked by the executed instruction count.
    """
    cfg = load_config(config)
    dp = make_datapath(cfg, keyboard=keyboard, display=display)
    if schedule is not None:
        dp.keyboard = ScheduledKeyboard(schedule, clock=lambda: dp.tick)
    load_image(image, dp, overflow=cfg["image_overflow"])
    cu = ControlUnit(dp, stop_event=stop_event)
    out, ticks, state = cu.run()

    if dump_path:
        try:
            cu._dump_memory_to_file(dump_path)
        except OSError as e:
            logging.error("Failed to write memory dump %s: %s", dump_path, e)
    _flush_logging_handlers()
    return out, ticks, state


def parse_schedule_file(path: str) -> list[tuple[int, str]]:
    """Parse schedule file with lines "<tick> <char>".

    Returns list of (tick, char).
    """
    result: list[tuple[int, str]] = []
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            parts = line.split(None, 1)
            try:
                tick = int(parts[0])
            except ValueError as e:
                err = f"Bad schedule line (bad tick): {line!r}"
                raise ValueError(err) from e
            token = parts[1] if len(parts) > 1 else " "
            try:
                token_unescaped = bytes(token, "utf-8").decode("unicode_escape")
            except UnicodeDecodeError:
                token_unescaped = token
            if token_unescaped == "":
                ch = " "
            else:
                if len(token_unescaped) > 1:
                    logging.debug(
                        "Schedule token %r decoded to %r (len>1); using first char",
                        token,
                        token_unescaped,
                    )
                ch = token_unescaped[0]
            result.append((tick, ch))
    return result


# ---------- CLI ----------
def main(argv: list[str] | None = None, stdout: TextIO | None = None) -> int:
    """Command line entry point. Returns the process exit status."""
    ap = argparse.ArgumentParser(
        description="LC-3 VM runner. Loads a big-endian program image (first word = origin) "
        "and runs it from 0x3000 until HALT or Ctrl-C."
    )
    ap.add_argument("program", help="program image (.obj)")
    ap.add_argument(
        "--input-schedule",
        help="scripted keyboard input instead of the terminal. Each non-empty line: '<tick> <char>'",
        default=None,
    )
    ap.add_argument("--config", help="path to yaml config", default=None)
    ap.add_argument("--debug", action="store_true", help="enable debug logging to logfile (per-step state).")
    ap.add_argument("--logfile", default=LOGFILE, help="path to processor log")
    ap.add_argument("--console", action="store_true", help="also echo logs to stderr (only when --debug)")
    ap.add_argument("--dump", default=None, help="write a memory dump here after the run")
    args = ap.parse_args(argv)

    init_logging(logfile=args.logfile, debug=args.debug, console=args.console)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print("Bad config:", e, file=sys.stderr)
        return 2

    sched: list[tuple[int, str]] | None = None
    if args.input_schedule:
        if not Path(args.input_schedule).exists():
            print("Input schedule file not found:", args.input_schedule, file=sys.stderr)
            return 2
        try:
            sched = parse_schedule_file(args.input_schedule)
        except ValueError as e:
            print("Bad input schedule:", e, file=sys.stderr)
            return 2
        logging.debug("CLI: parsed schedule from %s: %r", args.input_schedule, sched)

    stop_event = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda signum, frame: stop_event.set())
    display = StreamDisplay(stdout)
    try:
        if sched is not None:
            _, ticks, state = run_image(
                args.program, cfg, display=display, schedule=sched, stop_event=stop_event, dump_path=args.dump
            )
        else:
            with TerminalKeyboard() as kb:
                _, ticks, state = run_image(
                    args.program, cfg, keyboard=kb, display=display, stop_event=stop_event, dump_path=args.dump
                )
    except LoadError as e:
        logging.critical("Load failed: %s", e)
        print("Load error:", e, file=sys.stderr)
        return 1
    except MachineError as e:
        logging.critical("Execution aborted: %s", e)
        print(f"{type(e).__name__}: {e}", file=sys.stderr)
        return 1
    finally:
        signal.signal(signal.SIGINT, previous)

    logging.debug("CLI: %s after %d instructions", state, ticks)
    return 0


if __name__ == "__main__":
    sys.exit(main())

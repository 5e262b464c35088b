from __future__ import annotations
import json
import sys
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, NoReturn, Optional, Tuple

import numpy as np

from extensions import Hooks, StepContext
from lexer import ErrorKind, Position, SkaRuntimeError, read_literal
from sources import CharSource, FunctionBodySource, SourceStack


def wrap_int(value: int) -> int:
    """Reduce ``value`` to a 32-bit signed int, wrapping like a C ``int``."""
    return int(np.int64(value).astype(np.int32))


def trunc_divmod(dividend: int, divisor: int) -> Tuple[int, int]:
    # C semantics: quotient rounds toward zero, remainder follows the dividend
    quotient = abs(dividend) // abs(divisor)
    if (dividend < 0) != (divisor < 0):
        quotient = -quotient
    return quotient, dividend - divisor * quotient


def _render_bytes(data: bytes) -> str:
    text = data.decode("utf-8", errors="replace")
    rendered = repr(text)
    if len(rendered) > 80:
        rendered = rendered[:77] + "..."
    return rendered


@dataclass
class Function:
    name: bytes
    body: bytes
    location: Position

    @property
    def display_name(self) -> str:
        return self.name.decode("utf-8", errors="replace")


@dataclass
class Machine:
    accumulator: int = 0
    counter: int = 0
    string_src: bytes = b""
    string_dest: bytes = b""
    memory: Dict[bytes, int] = field(default_factory=dict)
    functions: Dict[bytes, Function] = field(default_factory=dict)

    def store(self, key: bytes, value: int) -> None:
        # First write wins; later stores to the same key are ignored.
        self.memory.setdefault(key, value)

    def snapshot(self) -> Dict[str, str]:
        return {
            "accumulator": str(self.accumulator),
            "counter": str(self.counter),
            "stringSrc": _render_bytes(self.string_src),
            "stringDest": _render_bytes(self.string_dest),
            "memory": str(len(self.memory)),
            "functions": ",".join(sorted(f.display_name for f in self.functions.values())),
        }


@dataclass
class Frame:
    name: str
    frame_id: str
    call_location: Optional[Position]
    function: Optional[Function] = None


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: Optional[str]
    location: Position
    opcode: bytes
    registers: Optional[Dict[str, str]]


STATE_LOG_LIMIT = 1024


class StateLogger:
    """Step log holding the most recent ``limit`` entries plus the last entry of each live frame."""

    def __init__(self, verbose: bool, limit: int = STATE_LOG_LIMIT) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=limit)
        self.next_state_index = 0
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame: Optional[Frame],
        location: Position,
        opcode: bytes,
        registers: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            frame_id=frame.frame_id if frame else None,
            location=location,
            opcode=opcode,
            registers=registers,
        )
        self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        self.next_state_index += 1
        return entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)

    def drop_frame(self, frame_id: str) -> None:
        self.frame_last_entry.pop(frame_id, None)


def _stdout_sink(data: bytes) -> None:
    out = sys.stdout.buffer
    out.write(data)
    out.flush()


class Interpreter:
    def __init__(
        self,
        *,
        source: CharSource,
        verbose: bool = False,
        hooks: Optional[Hooks] = None,
        output_sink: Optional[Callable[[bytes], None]] = None,
    ) -> None:
        self.source = source
        self.filename = source.name
        self.verbose = verbose
        self.hooks = hooks or Hooks()
        self.output_sink = output_sink or _stdout_sink

        self.machine = Machine()
        self.sources = SourceStack()
        # Position of the most recently consumed character.
        self.line = 1
        self.column = 0
        self.position_stack: List[Position] = []
        self.call_stack: List[Frame] = []
        self.frame_counter = 0
        self.logger = StateLogger(verbose=verbose)

        self.opcodes: Dict[bytes, Callable[[bytes], None]] = {
            b"s": self._op_store,
            b"l": self._op_load,
            b"p": self._op_print_string,
            b"o": self._op_print_number,
            b"i": self._op_newline_out,
            b'"': self._op_string_src,
            b"'": self._op_string_dest,
            b"t": self._op_swap_strings,
            b"a": self._op_add,
            b"m": self._op_subtract,
            b"x": self._op_multiply,
            b"d": self._op_divide,
            b"r": self._op_modulo,
            b"z": self._op_zero,
            b"c": self._op_swap_numbers,
            b"{": self._op_define,
            b"}": self._op_close_brace,
            b"n": self._op_skip_if_nonzero,
            b"b": self._op_skip_if_zero,
            b"g": self._op_skip_if_not_positive,
            b"h": self._op_skip_if_not_negative,
            b"q": self._op_call,
            b"(": self._op_comment,
            b" ": self._op_nop,
            b"\n": self._op_line,
            # Reserved for loops; currently no-ops.
            b"[": self._op_nop,
            b"]": self._op_nop,
        }
        for digit in b"0123456789":
            self.opcodes[bytes([digit])] = self._op_digit

    @property
    def position(self) -> Position:
        return Position(self.line, self.column)

    def run(self) -> None:
        self.call_stack.append(self._new_frame("<top-level>", None))
        try:
            with self.sources:
                self.sources.push(self.source)
                self._emit_event("program_start", self.machine)
                self._dispatch()
            self._emit_event("program_end", self.machine)
        except SkaRuntimeError as error:
            if self.logger.entries:
                error.step_index = self.logger.entries[-1].step_index
            try:
                self._emit_event("on_error", self.machine, error)
            except SkaRuntimeError as hook_error:
                raise error from hook_error
            raise

    def _dispatch(self) -> None:
        sources = self.sources
        opcodes = self.opcodes
        while sources:
            if not sources.top.has_more():
                self._leave_source()
                continue
            ch = sources.top.next_char()
            self.column += 1
            self._log_step(ch)
            handler = opcodes.get(ch)
            if handler is None:
                self._fail("Unrecognised token", ErrorKind.UNRECOGNISED_TOKEN)
            handler(ch)

    def _leave_source(self) -> None:
        self.sources.pop()
        if self.position_stack:
            saved = self.position_stack.pop()
            self.line, self.column = saved.line, saved.column
            frame = self.call_stack.pop()
            self.logger.drop_frame(frame.frame_id)
            self._emit_event("after_call", self.machine, frame.function)

    def _consume(self) -> Optional[bytes]:
        source = self.sources.top
        if not source.has_more():
            return None
        self.column += 1
        return source.next_char()

    def _fail(self, message: str, kind: ErrorKind) -> NoReturn:
        raise SkaRuntimeError(message, kind, location=self.position)

    def _output(self, data: bytes) -> None:
        self.output_sink(data)

    # ---- memory ----

    def _op_store(self, ch: bytes) -> None:
        self.machine.store(self.machine.string_dest, self.machine.accumulator)

    def _op_load(self, ch: bytes) -> None:
        machine = self.machine
        if not machine.string_src:
            self._fail("No string passed to load", ErrorKind.UNDEFINED_REFERENCE)
        try:
            machine.accumulator = machine.memory[machine.string_src]
        except KeyError:
            self._fail("No memory at specified location", ErrorKind.UNDEFINED_REFERENCE)

    # ---- numbers ----

    def _op_digit(self, ch: bytes) -> None:
        self.machine.counter = wrap_int(self.machine.counter * 10 + (ch[0] - 0x30))

    def _op_add(self, ch: bytes) -> None:
        m = self.machine
        m.accumulator = wrap_int(m.accumulator + m.counter)

    def _op_subtract(self, ch: bytes) -> None:
        m = self.machine
        m.accumulator = wrap_int(m.accumulator - m.counter)

    def _op_multiply(self, ch: bytes) -> None:
        m = self.machine
        m.accumulator = wrap_int(m.accumulator * m.counter)

    def _op_divide(self, ch: bytes) -> None:
        m = self.machine
        if m.counter == 0:
            self._fail("Division by zero", ErrorKind.DIVISION_BY_ZERO)
        m.accumulator = wrap_int(trunc_divmod(m.accumulator, m.counter)[0])

    def _op_modulo(self, ch: bytes) -> None:
        m = self.machine
        if m.counter == 0:
            self._fail("Modulo by zero", ErrorKind.DIVISION_BY_ZERO)
        m.accumulator = wrap_int(trunc_divmod(m.accumulator, m.counter)[1])

    def _op_zero(self, ch: bytes) -> None:
        self.machine.counter = 0

    def _op_swap_numbers(self, ch: bytes) -> None:
        m = self.machine
        m.accumulator, m.counter = m.counter, m.accumulator

    # ---- printing ----

    def _op_print_string(self, ch: bytes) -> None:
        self._output(self.machine.string_src)

    def _op_print_number(self, ch: bytes) -> None:
        self._output(str(self.machine.accumulator).encode("ascii"))

    def _op_newline_out(self, ch: bytes) -> None:
        self._output(b"\n")

    # ---- strings ----

    def _op_string_src(self, ch: bytes) -> None:
        self.machine.string_src = read_literal(self._consume, ch, self._fail)

    def _op_string_dest(self, ch: bytes) -> None:
        self.machine.string_dest = read_literal(self._consume, ch, self._fail)

    def _op_swap_strings(self, ch: bytes) -> None:
        m = self.machine
        m.string_src, m.string_dest = m.string_dest, m.string_src

    # ---- flow control ----

    def _op_define(self, ch: bytes) -> None:
        # Calls resume from the brace, so the body's first byte reports the
        # column just past it.
        location = self.position
        body = bytearray()
        while True:
            c = self._consume()
            if c is None:
                self._fail("Unmatched opening brace", ErrorKind.UNMATCHED_BRACE)
            if c == b"}":
                break
            body += c
        name = self.machine.string_dest
        self.machine.functions[name] = Function(name=name, body=bytes(body), location=location)

    def _op_close_brace(self, ch: bytes) -> None:
        self._fail("Unmatched closing brace", ErrorKind.UNMATCHED_BRACE)

    def _skip_next(self) -> None:
        self._consume()

    def _op_skip_if_nonzero(self, ch: bytes) -> None:
        if self.machine.accumulator != 0:
            self._skip_next()

    def _op_skip_if_zero(self, ch: bytes) -> None:
        if self.machine.accumulator == 0:
            self._skip_next()

    def _op_skip_if_not_positive(self, ch: bytes) -> None:
        if self.machine.accumulator <= 0:
            self._skip_next()

    def _op_skip_if_not_negative(self, ch: bytes) -> None:
        if self.machine.accumulator >= 0:
            self._skip_next()

    def _op_call(self, ch: bytes) -> None:
        function = self.machine.functions.get(self.machine.string_src)
        if function is None:
            self._fail("No function with specified name", ErrorKind.UNDEFINED_FUNCTION)
        call_location = self.position
        self._emit_event("before_call", self.machine, function, call_location)
        self.sources.push(FunctionBodySource(function.body, name=function.display_name))
        self.position_stack.append(call_location)
        self.call_stack.append(self._new_frame(function.display_name, call_location, function))
        self.line, self.column = function.location.line, function.location.column

    # ---- miscellaneous ----

    def _op_comment(self, ch: bytes) -> None:
        while True:
            c = self._consume()
            if c is None or c == b")":
                return

    def _op_nop(self, ch: bytes) -> None:
        pass

    def _op_line(self, ch: bytes) -> None:
        # Column restarts at 0, not 1: the next byte reports column 1 only
        # because consuming it increments first.
        self.line += 1
        self.column = 0

    # ---- bookkeeping ----

    def _new_frame(self, name: str, call_location: Optional[Position], function: Optional[Function] = None) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, frame_id=frame_id, call_location=call_location, function=function)

    def _emit_event(self, event: str, *args: Any) -> None:
        try:
            self.hooks.emit(event, *args)
        except SkaRuntimeError:
            raise
        except Exception as exc:
            raise SkaRuntimeError(
                f"Extension hook '{event}' failed: {exc}",
                ErrorKind.EXTENSION_FAILURE,
                location=self.position,
            )

    def _log_step(self, opcode: bytes) -> None:
        frame = self.call_stack[-1] if self.call_stack else None
        registers = self.machine.snapshot() if self.verbose else None
        location = self.position
        entry = self.logger.record(frame=frame, location=location, opcode=opcode, registers=registers)

        if not self.hooks.watches_steps:
            return
        try:
            self.hooks.step(
                self.machine,
                StepContext(step_index=entry.step_index, opcode=opcode, location=location, depth=len(self.position_stack)),
            )
        except SkaRuntimeError:
            raise
        except Exception as exc:
            raise SkaRuntimeError(
                f"Extension step rule failed: {exc}",
                ErrorKind.EXTENSION_FAILURE,
                location=location,
            )


@dataclass
class TracebackFrame:
    name: str
    location: Optional[Position]
    call_location: Optional[Position]
    state_entry: Optional[StateEntry]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        for frame in self.interpreter.call_stack:
            entry = self.interpreter.logger.last_entry_for_frame(frame.frame_id)
            frames.append(
                TracebackFrame(
                    name=frame.name,
                    location=entry.location if entry else None,
                    call_location=frame.call_location,
                    state_entry=entry,
                )
            )
        return frames

    def _error_location(self, error: SkaRuntimeError) -> Position:
        return error.location or self.interpreter.position

    def format_text(self, error: SkaRuntimeError, verbose: bool) -> str:
        location = self._error_location(error)
        lines = [f"Ska ({location.line}:{location.column}): {error.message}"]
        if not verbose:
            return "\n".join(lines)
        lines.append("Call trace (most recent call last):")
        for frame in self.build_frames():
            where = str(frame.location) if frame.location else "<no steps>"
            called = f" (called at {frame.call_location})" if frame.call_location else ""
            lines.append(f"  in {frame.name} at {where}{called}")
        entries = self.interpreter.logger.entries
        if entries:
            last = entries[-1]
            lines.append(f"  State log index: {last.step_index}  State id: {last.state_id}")
            if last.registers is not None:
                registers = ", ".join(f"{k}={v}" for k, v in last.registers.items())
                lines.append(f"  Registers: {registers}")
        lines.append(f"{error.kind.value}: {error.message}")
        return "\n".join(lines)

    def to_json(self, error: SkaRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames()):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name}
            if frame.location:
                entry["location"] = {"line": frame.location.line, "column": frame.location.column}
            if frame.call_location:
                entry["call_location"] = {"line": frame.call_location.line, "column": frame.call_location.column}
            if frame.state_entry:
                entry["state_id"] = frame.state_entry.state_id
                entry["step_index"] = frame.state_entry.step_index
                if frame.state_entry.registers is not None:
                    entry["registers"] = frame.state_entry.registers
            frames_json.append(entry)
        location = self._error_location(error)
        data = {
            "error": {
                "kind": error.kind.value,
                "message": error.message,
                "location": {"line": location.line, "column": location.column},
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)

"""Observer hooks for a Ska run.

An extension is a Python file defining ``ska_register(hooks)``. It attaches
handlers with ``hooks.on(event)`` or ``hooks.every(n)``; handlers see the
machine's registers and tables but cannot add opcodes.

Event handler signatures::

    program_start(machine)
    program_end(machine)
    before_call(machine, function, position)
    after_call(machine, function)
    on_error(machine, error)

Step rules are called as ``rule(machine, ctx)`` with a ``StepContext``.
"""

from __future__ import annotations

import os
import runpy
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple


EXTENSION_API_VERSION = 1

EVENTS = ("program_start", "program_end", "before_call", "after_call", "on_error")


class ExtensionError(Exception):
    pass


@dataclass(frozen=True)
class StepContext:
    step_index: int
    opcode: bytes
    location: Any  # Position
    depth: int


Handler = Callable[..., None]
StepRule = Callable[[Any, StepContext], None]


class Hooks:
    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = {event: [] for event in EVENTS}
        self._step_rules: List[Tuple[int, StepRule]] = []

    def on(self, event: str, handler: Optional[Handler] = None):
        """Attach ``handler`` to ``event``; without a handler, return a decorator."""
        if event not in self._handlers:
            raise ExtensionError(f"Unknown event '{event}'")
        if handler is None:
            return lambda fn: self.on(event, fn)
        self._handlers[event].append(handler)
        return handler

    def every(self, steps: int, rule: Optional[StepRule] = None):
        if steps <= 0:
            raise ExtensionError("Step interval must be >= 1")
        if rule is None:
            return lambda fn: self.every(steps, fn)
        self._step_rules.append((steps, rule))
        return rule

    @property
    def watches_steps(self) -> bool:
        return bool(self._step_rules)

    def emit(self, event: str, *args: Any) -> None:
        for handler in self._handlers[event]:
            handler(*args)

    def step(self, machine: Any, ctx: StepContext) -> None:
        for steps, rule in self._step_rules:
            if ctx.step_index % steps == 0:
                rule(machine, ctx)


def register_extension(hooks: Hooks, path: str) -> None:
    if not os.path.isfile(path):
        raise ExtensionError(f"Extension not found: {path}")
    try:
        namespace = runpy.run_path(path)
    except Exception as exc:
        raise ExtensionError(f"Extension {path} failed to load: {exc}") from exc
    version = namespace.get("SKA_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
    if version != EXTENSION_API_VERSION:
        raise ExtensionError(f"Extension {path} requires API {version}, host supports {EXTENSION_API_VERSION}")
    register = namespace.get("ska_register")
    if not callable(register):
        raise ExtensionError(f"Extension {path} must define callable ska_register(hooks)")
    try:
        register(hooks)
    except ExtensionError:
        raise
    except Exception as exc:
        raise ExtensionError(f"Extension {path} failed to load: {exc}") from exc


def load_extensions(paths: Sequence[str]) -> Hooks:
    hooks = Hooks()
    for path in paths:
        register_extension(hooks, os.path.abspath(path))
    return hooks

"""Observation hooks for func programs.

Extensions are plain Python files exposing ``func_register(ext)``. They can
watch a run (statements, calls, errors, the step log) but never change what
a program computes.
"""
from __future__ import annotations

import contextlib
import importlib.util
import os
import sys
import zlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Type

if TYPE_CHECKING:
    from interpreter import Interpreter, Value
    from lexer import Position
    from parser import Program, Statement


EXTENSION_API_VERSION = 1
POINTER_SUFFIX = ".funcx"


class FuncExtensionError(Exception):
    pass


@dataclass(frozen=True)
class ProgramEvent:
    program: "Program"
    # Only set for program_end.
    result: Optional["Value"] = None


@dataclass(frozen=True)
class StatementEvent:
    statement: "Statement"
    depth: int

    @property
    def location(self) -> "Position":
        return self.statement.location


@dataclass(frozen=True)
class CallEvent:
    name: str
    args: Tuple["Value", ...]
    location: "Position"
    depth: int
    # Only set for after_call.
    result: Optional["Value"] = None


@dataclass(frozen=True)
class ErrorEvent:
    error: BaseException


@dataclass(frozen=True)
class StepEvent:
    step_index: int
    state_id: str
    rule: str
    location: Optional["Position"]


EVENT_PAYLOADS: Dict[str, Type[Any]] = {
    "program_start": ProgramEvent,
    "before_statement": StatementEvent,
    "after_statement": StatementEvent,
    "before_call": CallEvent,
    "after_call": CallEvent,
    "on_error": ErrorEvent,
    "program_end": ProgramEvent,
}

EventHandler = Callable[["Interpreter", Any], None]
StepHandler = Callable[["Interpreter", StepEvent], None]


@dataclass(frozen=True)
class _Listener:
    priority: int
    order: int
    handler: EventHandler
    owner: str


@dataclass(frozen=True)
class _StepRule:
    every_n: int
    handler: StepHandler
    owner: str


@dataclass
class HookRegistry:
    _listeners: Dict[str, List[_Listener]] = field(default_factory=dict)
    _step_rules: List[_StepRule] = field(default_factory=list)
    _registered: int = 0

    def on_event(self, event: str, handler: EventHandler, *, priority: int = 0, owner: str = "<host>") -> None:
        if event not in EVENT_PAYLOADS:
            known = ", ".join(EVENT_PAYLOADS)
            raise FuncExtensionError(f"Unknown event '{event}' (expected one of: {known})")
        if not callable(handler):
            raise FuncExtensionError(f"Handler for '{event}' is not callable")
        listeners = self._listeners.setdefault(event, [])
        listeners.append(_Listener(priority, self._registered, handler, owner))
        # Higher priority first; registration order breaks ties.
        listeners.sort(key=lambda listener: (-listener.priority, listener.order))
        self._registered += 1

    def listening(self, event: str) -> bool:
        return bool(self._listeners.get(event))

    def emit(self, event: str, interpreter: "Interpreter", payload: Any) -> None:
        expected = EVENT_PAYLOADS[event]
        if not isinstance(payload, expected):
            raise TypeError(f"Event '{event}' expects {expected.__name__}, got {type(payload).__name__}")
        for listener in self._listeners.get(event, ()):
            listener.handler(interpreter, payload)

    def add_step_rule(self, every_n: int, handler: StepHandler, *, owner: str = "<host>") -> None:
        if every_n < 1:
            raise FuncExtensionError(f"Step interval must be >= 1, got {every_n}")
        self._step_rules.append(_StepRule(every_n, handler, owner))

    @property
    def has_step_rules(self) -> bool:
        return bool(self._step_rules)

    def after_step(self, interpreter: "Interpreter", step: StepEvent) -> None:
        for rule in self._step_rules:
            if step.step_index % rule.every_n == 0:
                rule.handler(interpreter, step)


@dataclass(frozen=True)
class LoadedExtension:
    name: str
    path: str


@dataclass
class RuntimeServices:
    hook_registry: HookRegistry = field(default_factory=HookRegistry)
    extensions: List[LoadedExtension] = field(default_factory=list)

    @property
    def extension_names(self) -> List[str]:
        return [ext.name for ext in self.extensions]


class ExtensionAPI:
    """Handle passed to ``func_register``; every hook is tagged with the extension's name."""

    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._hooks = services.hook_registry
        self.name = ext_name

    def on_event(self, event: str, handler: Optional[EventHandler] = None, *, priority: int = 0):
        def register(fn: EventHandler) -> EventHandler:
            self._hooks.on_event(event, fn, priority=priority, owner=self.name)
            return fn

        return register if handler is None else register(handler)

    def before_call(self, handler: Callable[["Interpreter", CallEvent], None]):
        return self.on_event("before_call", handler)

    def after_call(self, handler: Callable[["Interpreter", CallEvent], None]):
        return self.on_event("after_call", handler)

    def every_n_steps(self, every_n: int, handler: Optional[StepHandler] = None):
        def register(fn: StepHandler) -> StepHandler:
            self._hooks.add_step_rule(every_n, fn, owner=self.name)
            return fn

        return register if handler is None else register(handler)


def _module_name(path: str) -> str:
    stem = os.path.splitext(os.path.basename(path))[0]
    ident = "".join(ch if ch.isalnum() else "_" for ch in stem)
    return f"func_ext_{ident}_{zlib.crc32(path.encode('utf-8')):08x}"


@contextlib.contextmanager
def _importable_from(directory: str) -> Iterator[None]:
    # Sibling modules of an extension resolve while it executes.
    sys.path.insert(0, directory)
    try:
        yield
    finally:
        with contextlib.suppress(ValueError):
            sys.path.remove(directory)


def load_extension_module(path: str) -> Any:
    if not os.path.isfile(path):
        raise FuncExtensionError(f"Extension not found: {path}")
    spec = importlib.util.spec_from_file_location(_module_name(path), path)
    if spec is None or spec.loader is None:
        raise FuncExtensionError(f"Cannot import extension: {path}")
    module = importlib.util.module_from_spec(spec)
    with _importable_from(os.path.dirname(path)):
        spec.loader.exec_module(module)
    return module


def expand_extension_paths(paths: Sequence[str]) -> Iterator[str]:
    """Yield absolute extension paths, inlining ``.funcx`` lists.

    A ``.funcx`` file names one extension per line, relative to itself;
    ``#`` starts a comment.
    """
    for raw in paths:
        path = os.path.abspath(raw)
        if not path.lower().endswith(POINTER_SUFFIX):
            yield path
            continue
        if not os.path.isfile(path):
            raise FuncExtensionError(f"{POINTER_SUFFIX} file not found: {path}")
        base_dir = os.path.dirname(path)
        with open(path, "r", encoding="utf-8") as handle:
            for line in handle:
                entry = line.split("#", 1)[0].strip()
                if entry:
                    yield os.path.normpath(os.path.join(base_dir, entry))


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = build_default_services()
    for path in expand_extension_paths(paths):
        module = load_extension_module(path)
        wanted = getattr(module, "FUNC_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
        if wanted != EXTENSION_API_VERSION:
            raise FuncExtensionError(f"Extension {path} targets API {wanted}, this interpreter provides {EXTENSION_API_VERSION}")
        register = getattr(module, "func_register", None)
        if not callable(register):
            raise FuncExtensionError(f"Extension {path} must define func_register(ext)")
        name = str(getattr(module, "FUNC_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0]))
        register(ExtensionAPI(services=services, ext_name=name))
        services.extensions.append(LoadedExtension(name=name, path=path))
    return services

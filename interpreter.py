from __future__ import annotations
import dataclasses
import json
import math
import operator
import sys
import numpy as np
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union
from numpy.typing import NDArray

from lexer import FuncError, Lexer, Position, Token
from extensions import (
    CallEvent,
    ErrorEvent,
    HookRegistry,
    ProgramEvent,
    RuntimeServices,
    StatementEvent,
    StepEvent,
    build_default_services,
)
from parser import (
    ArrayExpression,
    AssignmentStatement,
    BinaryExpression,
    BlockExpression,
    BuiltinStatement,
    CallExpression,
    Expression,
    ExpressionStatement,
    FunctionStatement,
    GroupExpression,
    Identifier,
    IfExpression,
    LetStatement,
    Literal,
    Parser,
    Program,
    ReturnStatement,
    Statement,
    UnaryExpression,
)


TYPE_NUMBER = "number"
TYPE_STRING = "string"
TYPE_BOOLEAN = "boolean"
TYPE_ARRAY = "array"
TYPE_NIL = "nil"

DEFAULT_MAX_DEPTH = 128


class FuncRuntimeError(FuncError):
    """Raised for runtime faults."""

    kind = "RuntimeError"

    def __init__(self, message: str, position: Optional[Position] = None) -> None:
        super().__init__(message, position)
        self.step_index: Optional[int] = None


@dataclass(frozen=True, eq=False)
class Array:
    """Immutable sequence of values backed by a one-dimensional object array."""

    data: NDArray[Any]

    @classmethod
    def from_values(cls, values: Sequence["Value"]) -> "Array":
        data = np.empty(len(values), dtype=object)
        for index, value in enumerate(values):
            data[index] = value
        data.setflags(write=False)
        return cls(data)

    def __len__(self) -> int:
        return int(self.data.shape[0])

    def __iter__(self) -> Iterator["Value"]:
        return iter(self.data.tolist())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Array) or len(self) != len(other):
            return False
        return all(a.equals(b) for a, b in zip(self, other))

    __hash__ = None  # type: ignore[assignment]

    def append(self, value: "Value") -> "Array":
        size = len(self)
        data = np.empty(size + 1, dtype=object)
        data[:size] = self.data
        data[size] = value
        data.setflags(write=False)
        return Array(data)

    def drop_last(self) -> "Array":
        if len(self) == 0:
            return self
        return Array(self.data[:-1])


@dataclass(frozen=True, eq=False)
class Value:
    type: str
    value: Any

    @classmethod
    def number(cls, value: float) -> "Value":
        return cls(TYPE_NUMBER, float(value))

    @classmethod
    def string(cls, value: str) -> "Value":
        return cls(TYPE_STRING, value)

    @classmethod
    def boolean(cls, value: bool) -> "Value":
        return cls(TYPE_BOOLEAN, bool(value))

    @classmethod
    def array(cls, items: Sequence["Value"]) -> "Value":
        return cls(TYPE_ARRAY, Array.from_values(items))

    @classmethod
    def from_python(cls, raw: Any) -> "Value":
        if raw is None:
            return NIL
        # bool first: it is a subclass of int.
        if isinstance(raw, bool):
            return cls.boolean(raw)
        if isinstance(raw, (int, float)):
            return cls.number(raw)
        if isinstance(raw, str):
            return cls.string(raw)
        if isinstance(raw, Array):
            return cls(TYPE_ARRAY, raw)
        raise TypeError(f"Cannot convert {type(raw).__name__} to a value")

    def is_truthy(self) -> bool:
        if self.type == TYPE_BOOLEAN:
            return bool(self.value)
        return self.type != TYPE_NIL

    def push(self, item: "Value") -> "Value":
        if self.type != TYPE_ARRAY:
            raise FuncRuntimeError(f"Type mismatch, `{self.type}` doesn't support `push`")
        return Value(TYPE_ARRAY, self.value.append(item))

    def pop(self) -> "Value":
        if self.type != TYPE_ARRAY:
            raise FuncRuntimeError(f"Type mismatch, `{self.type}` doesn't support `pop`")
        return Value(TYPE_ARRAY, self.value.drop_last())

    def equals(self, other: "Value") -> bool:
        if self.type != other.type:
            return False
        return bool(self.value == other.value)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Value):
            return NotImplemented
        return self.equals(other)

    __hash__ = None  # type: ignore[assignment]

    def display(self) -> str:
        if self.type == TYPE_NUMBER:
            number = float(self.value)
            if math.isnan(number):
                return "NaN"
            # Shortest round-trip digits, never in exponent form.
            return np.format_float_positional(number, trim="-")
        if self.type == TYPE_STRING:
            return str(self.value)
        if self.type == TYPE_BOOLEAN:
            return "true" if self.value else "false"
        if self.type == TYPE_ARRAY:
            return "[" + ", ".join(item.display() for item in self.value) + "]"
        return "nil"


NIL = Value(TYPE_NIL, None)


@dataclass
class VariableBindings:
    parent: Optional["VariableBindings"] = None
    values: Dict[str, Value] = field(default_factory=dict)

    def _find_scope(self, name: str) -> Optional["VariableBindings"]:
        scope: Optional[VariableBindings] = self
        while scope is not None:
            if name in scope.values:
                return scope
            scope = scope.parent
        return None

    def declare(self, name: str, value: Value) -> None:
        self.values[name] = value

    def get(self, name: str) -> Value:
        scope = self._find_scope(name)
        if scope is None:
            raise FuncRuntimeError(f"Variable `{name}` doesn't exist")
        return scope.values[name]

    def assign(self, name: str, value: Value) -> None:
        scope = self._find_scope(name)
        if scope is None:
            raise FuncRuntimeError(f"Variable `{name}` doesn't exist")
        scope.values[name] = value

    def has(self, name: str) -> bool:
        return self._find_scope(name) is not None

    def child(self) -> "VariableBindings":
        return VariableBindings(parent=self)

    def snapshot(self) -> Dict[str, str]:
        chain: List[VariableBindings] = []
        scope: Optional[VariableBindings] = self
        while scope is not None:
            chain.append(scope)
            scope = scope.parent
        merged: Dict[str, str] = {}
        # Outermost first so inner shadowing wins.
        for scope in reversed(chain):
            for name, value in scope.values.items():
                rendered = value.display()
                if len(rendered) > 80:
                    rendered = rendered[:77] + "..."
                merged[name] = f"{value.type}:{rendered}"
        return merged


@dataclass
class Function:
    name: str
    params: List[str]
    body: BlockExpression
    location: Position


@dataclass
class FunctionBindings:
    functions: Dict[str, Function] = field(default_factory=dict)

    def put(self, name: str, function: Function) -> None:
        self.functions[name] = function

    def get(self, name: str) -> Function:
        try:
            return self.functions[name]
        except KeyError:
            raise FuncRuntimeError(f"Function `{name}` doesn't exist") from None

    def has(self, name: str) -> bool:
        return name in self.functions


@dataclass(frozen=True)
class Normal:
    value: Value


@dataclass(frozen=True)
class Return:
    value: Value


Completion = Union[Normal, Return]


def _divide(left: float, right: float) -> float:
    if right == 0:
        raise FuncRuntimeError("Division by zero")
    return left / right


def _remainder(left: float, right: float) -> float:
    if right == 0:
        raise FuncRuntimeError("Division by zero")
    # fmod raises on an infinite dividend; IEEE remainder is NaN there.
    if math.isinf(left) or math.isnan(left) or math.isnan(right):
        return math.nan
    return math.fmod(left, right)


# operand type -> token type -> implementation over raw payloads
BINARY_OPERATORS: Dict[str, Dict[str, Callable[[Any, Any], Any]]] = {
    TYPE_NUMBER: {
        "PLUS": operator.add,
        "MINUS": operator.sub,
        "STAR": operator.mul,
        "SLASH": _divide,
        "PERCENT": _remainder,
        "GREATER": operator.gt,
        "GREATER_EQUAL": operator.ge,
        "LESS": operator.lt,
        "LESS_EQUAL": operator.le,
    },
    TYPE_STRING: {
        "PLUS": operator.add,
        "GREATER": operator.gt,
        "GREATER_EQUAL": operator.ge,
        "LESS": operator.lt,
        "LESS_EQUAL": operator.le,
    },
}


@dataclass
class Frame:
    name: str
    frame_id: str
    call_location: Optional[Position]


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: Optional[str]
    source_location: Optional[Position]
    rule: str
    env_snapshot: Optional[Dict[str, str]]


class StateLogger:
    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StateEntry] = []
        self.next_state_index = 0
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame: Optional[Frame],
        location: Optional[Position],
        rule: str,
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            frame_id=frame.frame_id if frame else None,
            source_location=location,
            rule=rule,
            env_snapshot=env_snapshot,
        )
        self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        self.next_state_index += 1
        return entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)


def _write_stdout(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


class Interpreter:
    def __init__(
        self,
        *,
        verbose: bool = False,
        max_depth: int = DEFAULT_MAX_DEPTH,
        services: Optional[RuntimeServices] = None,
        input_provider: Optional[Callable[[], str]] = None,
        output_sink: Optional[Callable[[str], None]] = None,
    ) -> None:
        if max_depth < 1:
            raise ValueError("max_depth must be >= 1")
        self.verbose = verbose
        self.max_depth = max_depth
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.input_provider = input_provider or input
        self.output_sink = output_sink or _write_stdout

        self.globals = VariableBindings()
        self.functions = FunctionBindings()
        self.logger = StateLogger(verbose=verbose)
        self.logger.record(frame=None, location=None, rule="SEED")
        # source path -> lines, for tracebacks
        self.sources: Dict[str, List[str]] = {}
        self.frame_counter = 0
        self.depth = 0
        self.global_frame = self._new_frame("<top-level>", None)
        self.call_stack: List[Frame] = [self.global_frame]

    def run(self, source: str, filename: str = "<string>") -> Value:
        self.sources[filename] = source.splitlines()
        tokens = Lexer(filename, source).lex()
        program = Parser(tokens).parse()
        return self.interpret(program)

    def interpret(self, program: Program) -> Value:
        self.call_stack = [self.global_frame]
        self.depth = 0
        self._emit_event("program_start", ProgramEvent(program))
        try:
            completion = self._execute_statements(program.statements, self.globals, top_level=True)
        except FuncRuntimeError as error:
            self._emit_event("on_error", ErrorEvent(error))
            if self.logger.entries:
                error.step_index = self.logger.entries[-1].step_index
            raise
        except RecursionError:
            wrapped = FuncRuntimeError(f"Maximum depth of {self.max_depth} exceeded", self._last_location())
            self._emit_event("on_error", ErrorEvent(wrapped))
            wrapped.step_index = self.logger.entries[-1].step_index
            raise wrapped from None
        except Exception as exc:
            self._emit_event("on_error", ErrorEvent(exc))
            # Surface host-level failures as runtime errors so the CLI and
            # REPL can format them like any other traceback.
            wrapped = FuncRuntimeError(f"Internal interpreter error: {exc}", self._last_location())
            wrapped.step_index = self.logger.entries[-1].step_index
            raise wrapped
        self._emit_event("program_end", ProgramEvent(program, result=completion.value))
        return completion.value

    def _execute_statements(
        self, statements: List[Statement], scope: VariableBindings, *, top_level: bool = False
    ) -> Completion:
        hooks = self.hook_registry
        emit_event = self._emit_event
        execute_stmt = self._execute_statement
        result: Completion = Normal(NIL)
        for statement in statements:
            if hooks.listening("before_statement"):
                emit_event("before_statement", StatementEvent(statement, self.depth))
            result = execute_stmt(statement, scope)
            if hooks.listening("after_statement"):
                emit_event("after_statement", StatementEvent(statement, self.depth))
            # A return at the top level is dropped and execution continues.
            if isinstance(result, Return) and not top_level:
                return result
        return result

    def _execute_statement(self, statement: Statement, scope: VariableBindings) -> Completion:
        self._log_step(rule=statement.__class__.__name__, location=statement.location, scope=scope)
        try:
            if isinstance(statement, LetStatement):
                value = self._evaluate_expression(statement.expression, scope)
                scope.declare(statement.name, value)
                return Normal(NIL)
            if isinstance(statement, AssignmentStatement):
                scope.get(statement.name)
                value = self._evaluate_expression(statement.expression, scope)
                scope.assign(statement.name, value)
                return Normal(NIL)
            if isinstance(statement, FunctionStatement):
                self.functions.put(
                    statement.name,
                    Function(
                        name=statement.name,
                        params=list(statement.params),
                        body=statement.body,
                        location=statement.location,
                    ),
                )
                return Normal(NIL)
            if isinstance(statement, BuiltinStatement):
                self._execute_builtin(statement, scope)
                return Normal(NIL)
            if isinstance(statement, ReturnStatement):
                return Return(self._evaluate_expression(statement.expression, scope))
            if isinstance(statement, ExpressionStatement):
                return self._evaluate_completion(statement.expression, scope)
        except FuncRuntimeError as err:
            if err.position is None:
                err.position = statement.location
            raise
        raise FuncRuntimeError(f"Unsupported statement {statement.__class__.__name__}", statement.location)

    def _execute_builtin(self, statement: BuiltinStatement, scope: VariableBindings) -> None:
        kind = statement.kind
        if kind == "WRITE":
            values = [self._evaluate_expression(arg, scope) for arg in statement.args]
            self.output_sink("".join(value.display() for value in values))
            return
        name = self._target_name(statement.args[-1])
        if kind == "READ":
            scope.get(name)
            scope.assign(name, Value.string(self._read_line()))
            return
        if kind == "PUSH":
            item = self._evaluate_expression(statement.args[0], scope)
            scope.assign(name, scope.get(name).push(item))
            return
        if kind == "POP":
            scope.assign(name, scope.get(name).pop())
            return
        raise FuncRuntimeError(f"Unknown builtin `{kind.lower()}`", statement.location)

    @staticmethod
    def _target_name(expression: Expression) -> str:
        if not isinstance(expression, Identifier):
            raise FuncRuntimeError("Builtin target must be a variable name", expression.location)
        return expression.name

    def _read_line(self) -> str:
        try:
            line = self.input_provider()
        except EOFError:
            return ""
        return line.rstrip("\r\n")

    def _evaluate_block(self, block: BlockExpression, scope: VariableBindings) -> Completion:
        if self.depth >= self.max_depth:
            raise FuncRuntimeError(f"Maximum depth of {self.max_depth} exceeded", block.location)
        self.depth += 1
        try:
            return self._execute_statements(block.statements, scope.child())
        finally:
            self.depth -= 1

    def _evaluate_completion(self, expression: Expression, scope: VariableBindings) -> Completion:
        """Evaluate an expression in statement position, keeping any return."""
        if isinstance(expression, BlockExpression):
            return self._evaluate_block(expression, scope)
        if isinstance(expression, IfExpression):
            condition = self._evaluate_expression(expression.condition, scope)
            if condition.is_truthy():
                return self._evaluate_block(expression.if_block, scope)
            if expression.else_block is None:
                return Normal(NIL)
            return self._evaluate_completion(expression.else_block, scope)
        return Normal(self._evaluate_expression(expression, scope))

    def _evaluate_expression(self, expression: Expression, scope: VariableBindings) -> Value:
        try:
            if isinstance(expression, Literal):
                return self._literal_value(expression.token)
            if isinstance(expression, Identifier):
                return scope.get(expression.name)
            if isinstance(expression, BinaryExpression):
                return self._evaluate_binary(expression, scope)
            if isinstance(expression, UnaryExpression):
                return self._evaluate_unary(expression, scope)
            if isinstance(expression, GroupExpression):
                return self._evaluate_expression(expression.inner, scope)
            if isinstance(expression, CallExpression):
                return self._call_function(expression, scope)
            if isinstance(expression, ArrayExpression):
                return Value.array([self._literal_value(token) for token in expression.items])
            if isinstance(expression, (BlockExpression, IfExpression)):
                return self._evaluate_completion(expression, scope).value
        except FuncRuntimeError as err:
            if err.position is None:
                err.position = expression.location
            raise
        raise FuncRuntimeError(f"Unsupported expression {expression.__class__.__name__}", expression.location)

    @staticmethod
    def _literal_value(token: Token) -> Value:
        if token.type == "NUMBER":
            return Value.number(token.literal)
        if token.type == "STRING":
            return Value.string(token.literal)
        if token.type == "TRUE":
            return Value.boolean(True)
        if token.type == "FALSE":
            return Value.boolean(False)
        if token.type == "NIL":
            return NIL
        raise FuncRuntimeError(f"Unexpected literal `{token.lexeme}`", token.position)

    def _evaluate_binary(self, expression: BinaryExpression, scope: VariableBindings) -> Value:
        left = self._evaluate_expression(expression.left, scope)
        right = self._evaluate_expression(expression.right, scope)
        op = expression.operator
        if op.type == "AND":
            return Value.boolean(left.is_truthy() and right.is_truthy())
        if op.type == "OR":
            return Value.boolean(left.is_truthy() or right.is_truthy())
        if op.type == "EQUAL_EQUAL":
            return Value.boolean(left.equals(right))
        if op.type == "BANG_EQUAL":
            return Value.boolean(not left.equals(right))
        if left.type != right.type:
            raise FuncRuntimeError(
                f"Type mismatch, `{op.lexeme}` expects same type on both sides, got `{left.type}` and `{right.type}`",
                op.position,
            )
        impl = BINARY_OPERATORS.get(left.type, {}).get(op.type)
        if impl is None:
            raise FuncRuntimeError(
                f"Type mismatch, `{op.lexeme}` doesn't support `{left.type}` as its operand", op.position
            )
        try:
            return Value.from_python(impl(left.value, right.value))
        except FuncRuntimeError as err:
            err.position = op.position
            raise

    def _evaluate_unary(self, expression: UnaryExpression, scope: VariableBindings) -> Value:
        right = self._evaluate_expression(expression.right, scope)
        op = expression.operator
        if op.type == "BANG":
            return Value.boolean(not right.is_truthy())
        if right.type != TYPE_NUMBER:
            raise FuncRuntimeError(
                f"Type mismatch, `{op.lexeme}` doesn't support `{right.type}` as its operand", op.position
            )
        return Value.number(-right.value)

    def _call_function(self, expression: CallExpression, scope: VariableBindings) -> Value:
        function = self.functions.get(expression.name)
        if len(expression.args) != len(function.params):
            raise FuncRuntimeError(
                f"Function `{function.name}` expects {len(function.params)} arguments "
                f"but {len(expression.args)} were given",
                expression.location,
            )
        args = [self._evaluate_expression(arg, scope) for arg in expression.args]
        # Callees see globals and their parameters, never caller locals.
        call_scope = self.globals.child()
        for param, arg in zip(function.params, args):
            call_scope.declare(param, arg)

        self._log_step(rule="CallExpression", location=expression.location, scope=scope)
        call = CallEvent(function.name, tuple(args), expression.location, self.depth)
        self._emit_event("before_call", call)
        self.call_stack.append(self._new_frame(function.name, expression.location))
        completion = self._evaluate_block(function.body, call_scope)
        self.call_stack.pop()
        self._emit_event("after_call", dataclasses.replace(call, result=completion.value))
        return completion.value

    def _new_frame(self, name: str, call_location: Optional[Position]) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, frame_id=frame_id, call_location=call_location)

    def _last_location(self) -> Optional[Position]:
        if self.logger.entries:
            return self.logger.entries[-1].source_location
        return None

    def _emit_event(self, event: str, payload: Any) -> None:
        try:
            self.hook_registry.emit(event, self, payload)
        except (FuncRuntimeError, RecursionError):
            raise
        except Exception as exc:
            raise FuncRuntimeError(f"Extension hook '{event}' failed: {exc}", self._last_location()) from exc

    def _log_step(self, *, rule: str, location: Optional[Position], scope: VariableBindings) -> None:
        frame = self.call_stack[-1] if self.call_stack else None
        env_snapshot = scope.snapshot() if self.verbose else None
        entry = self.logger.record(frame=frame, location=location, rule=rule, env_snapshot=env_snapshot)

        if not self.hook_registry.has_step_rules:
            return
        try:
            self.hook_registry.after_step(
                self, StepEvent(step_index=entry.step_index, state_id=entry.state_id, rule=rule, location=location)
            )
        except (FuncRuntimeError, RecursionError):
            raise
        except Exception as exc:
            raise FuncRuntimeError(f"Extension step rule failed: {exc}", location) from exc


@dataclass
class TracebackFrame:
    name: str
    location: Optional[Position]
    statement: Optional[str]
    state_entry: Optional[StateEntry]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def _source_line(self, location: Optional[Position]) -> Optional[str]:
        if location is None:
            return None
        lines = self.interpreter.sources.get(location.source_path)
        if not lines or not 1 <= location.row <= len(lines):
            return None
        return lines[location.row - 1].strip() or None

    def build_frames(self, error: Optional[FuncError] = None) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        stack = self.interpreter.call_stack
        for index, frame in enumerate(stack):
            entry = self.interpreter.logger.last_entry_for_frame(frame.frame_id)
            location = entry.source_location if entry else frame.call_location
            # The innermost frame points at the failing node when known.
            if index == len(stack) - 1 and error is not None and error.position is not None:
                location = error.position
            frames.append(
                TracebackFrame(
                    name=frame.name,
                    location=location,
                    statement=self._source_line(location),
                    state_entry=entry,
                )
            )
        return frames

    def format_text(self, error: FuncError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames(error):
            if frame.location:
                lines.append(f"  File \"{frame.location.source_path}\", line {frame.location.row}, in {frame.name}")
                if frame.statement:
                    lines.append(f"    {frame.statement}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            if frame.state_entry:
                lines.append(
                    f"    State log index: {frame.state_entry.step_index}  State id: {frame.state_entry.state_id}"
                )
                if verbose and frame.state_entry.env_snapshot is not None:
                    snapshot = ", ".join(f"{k}={v}" for k, v in frame.state_entry.env_snapshot.items())
                    lines.append(f"    Env snapshot: {snapshot}")
        lines.append(f"{error.kind}: {error.message}")
        return "\n".join(lines)

    def to_json(self, error: FuncError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames(error)):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name}
            if frame.location:
                entry["source_location"] = {
                    "file": frame.location.source_path,
                    "line": frame.location.row,
                    "statement": frame.statement,
                }
            if frame.state_entry:
                entry["state_id"] = frame.state_entry.state_id
                entry["step_index"] = frame.state_entry.step_index
                entry["rule"] = frame.state_entry.rule
                if frame.state_entry.env_snapshot is not None:
                    entry["env_snapshot"] = frame.state_entry.env_snapshot
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.kind,
                "message": error.message,
                "failing_step_index": getattr(error, "step_index", None),
            },
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)

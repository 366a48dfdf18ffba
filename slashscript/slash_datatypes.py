"""
Defines the core data types for the slash-command scripting runtime.

This module provides the error taxonomy, the value helpers that scripts can
observe (the falsy sentinel, structured iteration entries, lazy iterable
sources), the immutable AST produced by the parser, and the Environment
scope chain the evaluator runs against.
"""

from collections import UserDict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple, Union
import collections.abc

# =================================================================
# Errors
# =================================================================

class SlashError(Exception):
    """Base class for every error raised by the engine."""
    def __init__(self, message: str, line: Optional[int] = None, col: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.line = line
        self.col = col
        self.script: Optional[str] = None

    def at(self, loc: Optional[Tuple[int, int]]) -> 'SlashError':
        """Attach a source position unless one is already known."""
        if loc is not None and self.line is None:
            self.line, self.col = loc
        return self

    def __str__(self) -> str:
        return self.message


class LexError(SlashError):
    def __init__(self, message: str, line: Optional[int] = None, col: Optional[int] = None, offset: Optional[int] = None):
        super().__init__(message, line, col)
        self.offset = offset


class ParseError(SlashError):
    def __init__(self, message: str, line: Optional[int] = None, col: Optional[int] = None,
                 kind: str = "SyntaxError", command: Optional[str] = None):
        super().__init__(message, line, col)
        self.kind = kind
        self.command = command


class ScriptError(SlashError):
    """A runtime failure that aborts the current run."""


class UnboundVariableError(ScriptError):
    def __init__(self, name: str, sigil: str = "$"):
        super().__init__(f"unbound variable {sigil}{name}")
        self.name = name
        self.sigil = sigil


class CallError(ScriptError):
    def __init__(self, message: str, function: Optional[str] = None):
        super().__init__(message)
        self.function = function


class NotFoundError(ScriptError):
    def __init__(self, key: str):
        super().__init__(f"{key} is not defined")
        self.key = key


class ScriptNotFoundError(ScriptError):
    def __init__(self, name: str):
        super().__init__(f"no script named '{name}'")
        self.name = name


class CancelledError(SlashError):
    """The run was cancelled at a suspension point."""


# =================================================================
# Runtime values
# =================================================================

class _Falsy:
    """Sentinel a capability can return to mean "no / nothing" explicitly."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __str__(self):
        return ""

    def __repr__(self):
        return "FALSY"


FALSY = _Falsy()


def is_truthy(value: Any) -> bool:
    """Condition semantics for /if and /while.

    Only the empty string, numeric zero, boolean false, none and the FALSY
    sentinel are falsy. Non-empty strings such as "0" or "false" are truthy,
    and so are empty lists and mappings.
    """
    if value is None or value is FALSY:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value != ""
    return True


@dataclass(frozen=True)
class Entry:
    """A structured iteration entry: `$item` gets `value`, `$item_<key>` each field."""
    value: Any
    fields: Dict[str, Any] = field(default_factory=dict)


class IterableSource:
    """A lazily produced list bound under an `@name`.

    Iteration always calls the producer again; a consumed sequence is never
    rewound.
    """
    def __init__(self, name: str, producer: Any, args: Tuple[Any, ...] = ()):
        self.name = name
        self.producer = producer
        self.args = tuple(args)

    def open(self) -> Union[Iterable, collections.abc.AsyncIterable]:
        return self.producer.produce(*self.args)

    def __repr__(self) -> str:
        args = ", ".join(repr(a) for a in self.args)
        return f"{self.name}({args})"


# =================================================================
# Expression nodes
# =================================================================

Loc = Optional[Tuple[int, int]]


@dataclass(frozen=True)
class VarPart:
    """A `$name` reference inside an interpolated string."""
    name: str


@dataclass(frozen=True)
class InterpolatedString:
    """Literal text interleaved with variable references.

    Rendering happens every time the string is evaluated; nothing is cached.
    """
    parts: Tuple[Union[str, VarPart], ...]
    loc: Loc = field(default=None, compare=False)

    def render(self, lookup) -> str:
        out = []
        for part in self.parts:
            if isinstance(part, VarPart):
                out.append(lookup(part.name))
            else:
                out.append(part)
        return "".join(out)

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(p.name for p in self.parts if isinstance(p, VarPart))

    def source(self) -> str:
        """Re-create the template text (used when listing definitions)."""
        return "".join(f"${p.name}" if isinstance(p, VarPart) else p for p in self.parts)


@dataclass(frozen=True)
class Literal:
    value: Any
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class VarRef:
    name: str
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class ListRef:
    name: str
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class ListLiteral:
    items: Tuple[Any, ...]
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class CallExpr:
    name: str
    args: Tuple[Any, ...]
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class ProducerExpr:
    name: str
    args: Tuple[Any, ...]
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: Any
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: Any
    right: Any
    loc: Loc = field(default=None, compare=False)


# =================================================================
# Functions
# =================================================================

FUNCTION_KINDS = ("static", "llm", "code")


@dataclass(frozen=True)
class FunctionDefinition:
    """A user-defined function with one of three body strategies.

    `static` and `llm` bodies are InterpolatedStrings rendered against the
    bound parameters; a `code` body is an opaque string handed to the code
    executor capability.
    """
    name: str
    params: Tuple[str, ...]
    kind: str
    body: Union[InterpolatedString, str]
    language: Optional[str] = None
    loc: Loc = field(default=None, compare=False)

    @property
    def arity(self) -> int:
        return len(self.params)


# =================================================================
# Statement nodes
# =================================================================

Block = Tuple[Any, ...]


@dataclass(frozen=True)
class VarAssign:
    name: str
    value: Any
    declare: bool = False
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class VarDelete:
    name: str
    sigil: str = "$"
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class ListDefine:
    name: str
    source: Any
    declare: bool = False
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class ListAppend:
    name: str
    value: Any
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class FuncDefine:
    definition: FunctionDefinition
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class FuncDelete:
    name: str
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class Call:
    call: CallExpr
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class Echo:
    value: Any
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class Sleep:
    duration: Any
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class Prompt:
    name: str
    message: Any = None
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class Confirm:
    name: str
    message: Any = None
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class If:
    condition: Any
    body: Block
    orelse: Block = ()
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class For:
    name: str
    iterable: Any
    body: Block
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class While:
    condition: Any
    body: Block
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class ScriptInvoke:
    action: str
    name: Optional[str] = None
    argument: Any = None
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class ShowVars:
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class ShowFuncs:
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class Break:
    loc: Loc = field(default=None, compare=False)


@dataclass(frozen=True)
class Continue:
    loc: Loc = field(default=None, compare=False)


# =================================================================
# Scopes
# =================================================================

VAR = "$"
LIST = "@"


class FunctionRegistry(UserDict):
    """Process-wide function table shared by every run's root Environment."""

    def register(self, definition: FunctionDefinition) -> FunctionDefinition:
        self.data[definition.name] = definition
        return definition

    def unregister(self, name: str) -> FunctionDefinition:
        if name not in self.data:
            raise NotFoundError(f"function {name}")
        return self.data.pop(name)

    def names(self) -> list:
        return list(self.data.keys())

    def __repr__(self) -> str:
        return f"<FunctionRegistry [{', '.join(self.data.keys())}]>"


class Environment:
    """A lexical scope with a non-owning link to its parent.

    Variables (`$`), lists (`@`) and functions live in separate namespaces.
    Each scope owns only its own bindings; lookups walk child → parent.
    """
    def __init__(self, parent: Optional['Environment'] = None,
                 functions: Optional[collections.abc.MutableMapping] = None):
        self.parent = parent
        self.bindings: Dict[str, Dict[str, Any]] = {VAR: {}, LIST: {}}
        self.functions = functions if functions is not None else {}

    def child(self) -> 'Environment':
        return Environment(parent=self)

    @property
    def root(self) -> 'Environment':
        env = self
        while env.parent is not None:
            env = env.parent
        return env

    def find_owner(self, name: str, sigil: str = VAR) -> Optional['Environment']:
        """Finds the nearest Environment in the chain that binds name."""
        env = self
        while env is not None:
            if name in env.bindings[sigil]:
                return env
            env = env.parent
        return None

    def declare(self, name: str, value: Any, sigil: str = VAR):
        """Binds name in this scope, shadowing any ancestor binding."""
        self.bindings[sigil][name] = value
        return value

    def assign(self, name: str, value: Any, sigil: str = VAR):
        """Rebinds name where it was declared, or declares it here."""
        owner = self.find_owner(name, sigil) or self
        owner.bindings[sigil][name] = value
        return value

    def lookup(self, name: str, sigil: str = VAR) -> Any:
        owner = self.find_owner(name, sigil)
        if owner is None:
            raise UnboundVariableError(name, sigil)
        return owner.bindings[sigil][name]

    def get(self, name: str, default: Any = None, sigil: str = VAR) -> Any:
        owner = self.find_owner(name, sigil)
        if owner is None:
            return default
        return owner.bindings[sigil][name]

    def delete(self, name: str, sigil: str = VAR):
        """Removes the nearest binding of name from the scope that owns it."""
        owner = self.find_owner(name, sigil)
        if owner is None:
            raise NotFoundError(f"{sigil}{name}")
        del owner.bindings[sigil][name]

    def visible(self, sigil: str = VAR) -> Dict[str, Any]:
        """Flattens the chain into one mapping; nearer scopes win."""
        chain = []
        env = self
        while env is not None:
            chain.append(env)
            env = env.parent
        out: Dict[str, Any] = {}
        for env in reversed(chain):
            out.update(env.bindings[sigil])
        return out

    # --- Functions ---

    def define_function(self, definition: FunctionDefinition) -> FunctionDefinition:
        self.functions[definition.name] = definition
        return definition

    def resolve_function(self, name: str) -> Optional[FunctionDefinition]:
        env = self
        while env is not None:
            if name in env.functions:
                return env.functions[name]
            env = env.parent
        return None

    def delete_function(self, name: str):
        env = self
        while env is not None:
            if name in env.functions:
                del env.functions[name]
                return
            env = env.parent
        raise NotFoundError(f"function {name}")

    def visible_functions(self) -> Dict[str, FunctionDefinition]:
        chain = []
        env = self
        while env is not None:
            chain.append(env)
            env = env.parent
        out: Dict[str, FunctionDefinition] = {}
        for env in reversed(chain):
            out.update(env.functions)
        return out

    def __contains__(self, name: str) -> bool:
        return self.find_owner(name) is not None

    def __repr__(self) -> str:
        keys = ', '.join(list(self.bindings[VAR].keys()) + [f"@{k}" for k in self.bindings[LIST]])
        parent_id = f", parent=#{id(self.parent)}" if self.parent else ""
        return f"<Environment bindings=[{keys}]{parent_id}>"

import asyncio
import collections.abc
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional, Tuple, Union

from slashscript.slash_datatypes import (
    SlashError, LexError, ParseError, ScriptError, ScriptNotFoundError, CancelledError,
    FunctionRegistry, Environment,
)
from slashscript.slash_interpreter import Evaluator, top_level_environment
from slashscript.slash_lexer import normalize_source
from slashscript.slash_parser import Parser
from slashscript.slash_printer import Printer

# ===================================================================
# 1. Capabilities
# ===================================================================

class LLMCapability(ABC):
    """Completes a rendered prompt; the result becomes the call's value."""
    @abstractmethod
    async def invoke(self, prompt: str) -> Any: raise NotImplementedError


class CodeExecutor(ABC):
    """Runs an opaque code body with the bound parameters as its context."""
    @abstractmethod
    async def execute(self, body: str, params: Dict[str, Any]) -> Any: raise NotImplementedError


class HumanInput(ABC):
    """Asks the person running the script. Returning None means they cancelled."""
    @abstractmethod
    async def request_input(self, message: str) -> Optional[str]: raise NotImplementedError
    @abstractmethod
    async def request_confirmation(self, message: str) -> Optional[bool]: raise NotImplementedError


class IterableProducer(ABC):
    """Enumerates entries lazily. Each call to produce() starts a new sequence."""
    @abstractmethod
    def produce(self, *args) -> Union[collections.abc.Iterable, collections.abc.AsyncIterable]:
        raise NotImplementedError


class RangeProducer(IterableProducer):
    def produce(self, *args):
        if not 1 <= len(args) <= 3:
            raise ScriptError(f"range expects 1 to 3 arguments, got {len(args)}")
        try:
            bounds = [int(a) for a in args]
        except (TypeError, ValueError):
            raise ScriptError(f"range expects integers, got {list(args)!r}") from None
        return iter(range(*bounds))


def default_producers() -> Dict[str, IterableProducer]:
    # slash_fs subclasses IterableProducer, so it is imported late
    from slashscript.slash_fs import GlobProducer, LinesProducer, ItemsProducer
    return {
        'range': RangeProducer(),
        'glob': GlobProducer(),
        'lines': LinesProducer(),
        'items': ItemsProducer(),
    }


OutputCallback = Callable[[str, str], Any]


@dataclass
class Capabilities:
    llm: Optional[LLMCapability] = None
    code: Optional[CodeExecutor] = None
    human: Optional[HumanInput] = None
    producers: Dict[str, IterableProducer] = field(default_factory=default_producers)
    output: Optional[OutputCallback] = None


@dataclass(eq=False)
class RunContext:
    """Per-run state shared with nested script invocations."""
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    side_effects: List[Dict] = field(default_factory=list)
    output: Optional[OutputCallback] = None

    def cancel(self):
        self.cancelled.set()

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled.is_set()


# ===================================================================
# 2. Script Registry
# ===================================================================

@dataclass(frozen=True)
class Script:
    name: str
    commands: Tuple[Any, ...]
    description: str = ""

    @property
    def source(self) -> Optional[str]:
        if all(isinstance(c, str) for c in self.commands):
            return "\n".join(self.commands)
        return None


class ScriptRegistry:
    """Named scripts in registration order, with a per-name parse cache."""

    def __init__(self, parser: Optional[Parser] = None):
        self.parser = parser or Parser()
        self._scripts: "OrderedDict[str, Script]" = OrderedDict()
        self._parsed: Dict[str, Tuple[Any, ...]] = {}

    def register(self, name: str, script: Union[Script, str, collections.abc.Sequence], description: str = "") -> Script:
        if isinstance(script, str):
            script = Script(name, tuple(script.splitlines()), description)
        elif not isinstance(script, Script):
            script = Script(name, tuple(script), description)
        elif script.name != name:
            script = Script(name, script.commands, script.description)
        self._scripts.pop(name, None)
        self._scripts[name] = script
        self._parsed.pop(name, None)
        return script

    def unregister(self, name: str) -> Script:
        if name not in self._scripts:
            raise ScriptNotFoundError(name)
        self._parsed.pop(name, None)
        return self._scripts.pop(name)

    def get(self, name: str) -> Script:
        try:
            return self._scripts[name]
        except KeyError:
            raise ScriptNotFoundError(name) from None

    def list(self) -> List[Script]:
        return list(self._scripts.values())

    def parse(self, name: str) -> Tuple[Any, ...]:
        """The statements for a script, parsed once and cached until re-registered."""
        if name in self._parsed:
            return self._parsed[name]
        script = self.get(name)
        source = script.source
        try:
            statements = self.parser.parse(source) if source is not None else tuple(script.commands)
        except SlashError as e:
            e.script = name
            raise
        self._parsed[name] = statements
        return statements

    def __contains__(self, name: str) -> bool:
        return name in self._scripts

    def __len__(self) -> int:
        return len(self._scripts)


# ===================================================================
# 3. Script Execution
# ===================================================================

@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error_token: Optional[Dict] = None
    side_effects: List[Dict] = field(default_factory=list)

    @property
    def output(self) -> List[str]:
        return [e['message'] for e in self.side_effects if 'stdout' in e.get('topics', ())]

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_token and self.error_token.get('line') is not None:
            line = self.error_token.get('line')
            col = self.error_token.get('col')
            if not msg.startswith("Error on line "):
                col_info = f", col {col}" if col is not None else ""
                return f"Error on line {line}{col_info}: {msg}"
        return msg


class ScriptRunner:
    """Runs registered scripts and ad hoc source against shared registries.

    Every run gets its own RunContext and Evaluator, so runs may interleave.
    Pass a context from `new_context()` to cancel one run on its own;
    `cancel()` cancels every run still in flight.
    """

    def __init__(self, capabilities: Optional[Capabilities] = None,
                 scripts: Optional[ScriptRegistry] = None,
                 functions: Optional[FunctionRegistry] = None, input: Any = None):
        self.capabilities = capabilities if capabilities is not None else Capabilities()
        self.scripts = scripts if scripts is not None else ScriptRegistry()
        self.functions = functions if functions is not None else FunctionRegistry()
        self.parser = self.scripts.parser
        self.printer = Printer()
        self.session_env: Environment = top_level_environment(self.functions, input)
        self._active: List[RunContext] = []

    def new_context(self) -> RunContext:
        return RunContext(output=self.capabilities.output)

    def _evaluator(self, context: RunContext) -> Evaluator:
        return Evaluator(context, self.capabilities, self.scripts, self.printer)

    def cancel(self):
        """Cancels every run in progress."""
        for context in list(self._active):
            context.cancel()

    async def _execute(self, evaluator: Evaluator, statements, env: Environment) -> Any:
        self._active.append(evaluator.context)
        try:
            return await evaluator.run(statements, env)
        finally:
            self._active.remove(evaluator.context)

    async def run(self, name: str, input: Any = None, context: Optional[RunContext] = None) -> ExecutionResult:
        """Runs a registered script; errors propagate to the caller."""
        statements = self.scripts.parse(name)
        evaluator = self._evaluator(context or self.new_context())
        env = top_level_environment(self.functions, input)
        try:
            value = await self._execute(evaluator, statements, env)
        except SlashError as e:
            if e.script is None:
                e.script = name
            raise
        return ExecutionResult(status='success', value=value, side_effects=evaluator.side_effects)

    async def handle_script(self, source_code: str, context: Optional[RunContext] = None) -> ExecutionResult:
        """Runs ad hoc source in the session environment and reports failures as results."""
        evaluator = self._evaluator(context or self.new_context())
        try:
            statements = self.parser.parse(source_code)
            value = await self._execute(evaluator, statements, self.session_env)
        except SlashError as e:
            msg = self._format_error(e, source_code, evaluator)
            evaluator.side_effects.append({'topics': ['stderr'], 'message': msg})
            token = {'line': e.line, 'col': e.col} if e.line is not None else None
            return ExecutionResult(status='error', error_message=msg, error_token=token,
                                   side_effects=evaluator.side_effects)
        return ExecutionResult(status='success', value=value, side_effects=evaluator.side_effects)

    # --- Error formatting ---

    def _format_error(self, e: SlashError, source: str, evaluator: Optional[Evaluator] = None) -> str:
        match e:
            case ParseError():
                label = e.kind
            case LexError():
                label = "LexError"
            case _:
                label = type(e).__name__
        msg = f"{label}: {e.message}"
        if e.script is not None:
            msg = f"{msg} (in script '{e.script}')"
            try:
                source = self.scripts.get(e.script).source or ""
            except ScriptNotFoundError:
                source = ""
        if e.line is not None:
            msg = f"{msg}\n(line {e.line}, col {e.col})"
            # positions refer to the tab-expanded text the lexer saw
            context = self._source_context(normalize_source(source), e.line, e.col)
            if context:
                msg = f"{msg}\n{context}"
        st = self._format_stacktrace(evaluator)
        if st and not isinstance(e, (LexError, ParseError, CancelledError)):
            msg += "\n" + st
        return msg

    def _source_context(self, source: str, line: int, col: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            out.append(f"{prefix} {str(i).rjust(width)} | {lines[i - 1]}")
            if i == line and col is not None:
                caret = " " * max(col - 1, 0)
                out.append(f"  {' ' * width} | {caret}^")
        return "\n".join(out)

    def _format_stacktrace(self, evaluator: Optional[Evaluator]) -> str:
        stack = evaluator.call_stack if evaluator is not None else []
        if not stack:
            return ""
        frames = []
        for frame in stack:
            args = " ".join(self.printer.pformat(a) for a in frame.get('args') or [])
            frames.append(f"({frame['name']}{' ' + args if args else ''})")
        return "Script stacktrace: " + " ".join(frames)

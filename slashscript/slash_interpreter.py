"""
The core interpreter: the Evaluator walks parsed statements against an
Environment chain and drives control flow and the suspension points.
"""
import asyncio
import collections.abc
import inspect
import os
import re
import sys
from typing import Any, List, Optional, Tuple

from slashscript.slash_datatypes import (
    SlashError, ScriptError, CallError, NotFoundError, CancelledError,
    FALSY, Entry, IterableSource, is_truthy, Environment, VAR, LIST,
    InterpolatedString, Literal, VarRef, ListRef, ListLiteral, CallExpr, ProducerExpr,
    UnaryOp, BinaryOp, FunctionDefinition,
    VarAssign, VarDelete, ListDefine, ListAppend, FuncDefine, FuncDelete, Call,
    Echo, Sleep, Prompt, Confirm, If, For, While, ScriptInvoke,
    ShowVars, ShowFuncs, Break, Continue,
)
from slashscript.slash_printer import Printer
from slashscript.slash_serialize import deserialize

_NUMERIC = re.compile(r"\s*-?\d+(?:\.\d+)?\s*")
YIELD_EVERY = 100


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _is_number(x) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def _as_number(x):
    if _is_number(x):
        return x
    if isinstance(x, str) and _NUMERIC.fullmatch(x):
        s = x.strip()
        return float(s) if '.' in s else int(s)
    return None


def top_level_environment(functions, input_value: Any = None) -> Environment:
    """A fresh run Environment with `$input` and `@args` seeded from the input."""
    env = Environment(functions=functions)
    if input_value is None:
        input_value = ""
    env.declare("input", input_value)
    if isinstance(input_value, list):
        args = list(input_value)
    else:
        args = Printer().to_text(input_value).split()
    env.declare("args", args, LIST)
    return env


class BreakLoop(Exception):
    pass


class ContinueLoop(Exception):
    pass


class Evaluator:
    """Executes statements; every run shares one RunContext for cancellation and output."""

    def __init__(self, context, capabilities=None, scripts=None, printer: Optional[Printer] = None):
        self.context = context
        self.capabilities = capabilities
        self.scripts = scripts
        self.printer = printer or Printer()
        self.call_stack: List[dict] = []
        self.current_node = None
        self.script_depth = 0
        self.max_loop_iters = _env_int("SLASH_MAX_LOOP_ITERS", 100000)
        self.max_script_depth = _env_int("SLASH_MAX_SCRIPT_DEPTH", 16)

    @property
    def side_effects(self) -> list:
        return self.context.side_effects

    def _dbg(self, *parts):
        if os.environ.get("SLASH_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    # --- Statements ---

    async def run(self, statements, env: Environment) -> Any:
        return await self._exec_block(statements, env)

    async def _exec_block(self, body, env: Environment) -> Any:
        last = None
        for stmt in body:
            last = await self._exec(stmt, env)
        return last

    async def _exec(self, stmt, env: Environment) -> Any:
        self.current_node = stmt
        try:
            return await self._dispatch(stmt, env)
        except SlashError as e:
            raise e.at(stmt.loc)

    async def _dispatch(self, stmt, env: Environment) -> Any:
        match stmt:
            case VarAssign(name=name, value=expr, declare=declare):
                value = await self.eval(expr, env)
                self._dbg("var", name, "declare" if declare else "assign", type(value).__name__)
                return env.declare(name, value) if declare else env.assign(name, value)
            case VarDelete(name=name, sigil=sigil):
                try:
                    env.delete(name, sigil)
                except NotFoundError as e:
                    await self._report(e)
                return None
            case ListDefine(name=name, source=source, declare=declare):
                value = await self._list_value(source, env)
                return env.declare(name, value, LIST) if declare else env.assign(name, value, LIST)
            case ListAppend(name=name, value=expr):
                return await self._append(name, expr, env)
            case FuncDefine(definition=definition):
                self._dbg("func", definition.kind, definition.name, definition.params)
                env.define_function(definition)
                return None
            case FuncDelete(name=name):
                try:
                    env.delete_function(name)
                except NotFoundError as e:
                    await self._report(e)
                return None
            case Call(call=call):
                return await self.call(call, env)
            case Echo(value=expr):
                text = self.printer.to_text(await self._text_argument(expr, env))
                await self._emit('stdout', text)
                return text
            case Sleep(duration=expr):
                return await self._sleep(await self.eval(expr, env))
            case Prompt(name=name, message=message):
                return await self._ask(name, message, env, confirm=False)
            case Confirm(name=name, message=message):
                return await self._ask(name, message, env, confirm=True)
            case If(condition=cond, body=body, orelse=orelse):
                if is_truthy(await self.eval(cond, env)):
                    return await self._exec_block(body, env.child())
                if orelse:
                    return await self._exec_block(orelse, env.child())
                return None
            case For():
                return await self._for(stmt, env)
            case While():
                return await self._while(stmt, env)
            case ScriptInvoke():
                return await self._script(stmt, env)
            case ShowVars():
                text = self.printer.render_vars(env.visible(VAR), env.visible(LIST))
                await self._emit('stdout', text)
                return text
            case ShowFuncs():
                text = self.printer.render_funcs(env.visible_functions())
                await self._emit('stdout', text)
                return text
            case Break():
                raise BreakLoop()
            case Continue():
                raise ContinueLoop()
        raise ScriptError(f"cannot execute {type(stmt).__name__}")

    async def _text_argument(self, expr, env: Environment) -> Any:
        """A rest-of-line argument is text, so a bare reference is as lenient as interpolation."""
        match expr:
            case VarRef(name=name):
                return env.get(name, None, VAR)
            case ListRef(name=name):
                value = env.get(name, None, LIST)
                return list(value) if isinstance(value, list) else value
        return await self.eval(expr, env)

    async def _append(self, name: str, expr, env: Environment):
        value = await self.eval(expr, env)
        current = env.get(name, None, LIST)
        if current is None:
            return env.assign(name, [value], LIST)
        if isinstance(current, IterableSource):
            raise ScriptError(f"cannot append to @{name}: it is produced by {current!r}")
        current.append(value)
        return current

    async def _ask(self, name: str, message, env: Environment, confirm: bool):
        text = self.printer.to_text(await self.eval(message, env)) if message is not None else ""
        human = self._capability('human', '/confirm' if confirm else '/prompt')
        request = human.request_confirmation(text) if confirm else human.request_input(text)
        answer = await self._external('/confirm' if confirm else '/prompt', request)
        if answer is None:
            raise CancelledError("input cancelled by user")
        if confirm:
            answer = is_truthy(answer)
        return env.assign(name, answer)

    async def _sleep(self, value):
        seconds = _as_number(value)
        if seconds is None:
            raise ScriptError(f"/sleep expects a number of seconds, got {self.printer.pformat(value)}")
        await self._suspend(asyncio.sleep(max(0, seconds)))
        return None

    # --- Loops ---

    async def _checkpoint(self):
        await asyncio.sleep(0)
        if self.context.is_cancelled:
            raise CancelledError("run cancelled")

    async def _for(self, stmt: For, env: Environment):
        source = await self._list_value(stmt.iterable, env)
        self._dbg("for", stmt.name, "over", repr(source))
        last = None
        count = 0
        items = self._each(source)
        try:
            async for item in items:
                count += 1
                scope = env.child()
                if isinstance(item, Entry):
                    scope.declare(stmt.name, item.value)
                    for key, value in item.fields.items():
                        scope.declare(f"{stmt.name}_{key}", value)
                else:
                    scope.declare(stmt.name, item)
                try:
                    last = await self._exec_block(stmt.body, scope)
                except BreakLoop:
                    break
                except ContinueLoop:
                    pass
                if count % YIELD_EVERY == 0:
                    await self._checkpoint()
        finally:
            await items.aclose()
        return last

    async def _while(self, stmt: While, env: Environment):
        last = None
        count = 0
        while is_truthy(await self.eval(stmt.condition, env)):
            count += 1
            if count > self.max_loop_iters:
                raise ScriptError(f"/while: iteration limit of {self.max_loop_iters} exceeded")
            try:
                last = await self._exec_block(stmt.body, env.child())
            except BreakLoop:
                break
            except ContinueLoop:
                pass
            if count % YIELD_EVERY == 0:
                await self._checkpoint()
        return last

    async def _each(self, source):
        """Yields the items of a list or a freshly opened producer sequence."""
        if isinstance(source, IterableSource):
            name = source.name
            try:
                produced = source.open()
            except SlashError:
                raise
            except Exception as e:
                raise CallError(f"producer '{name}' failed: {e}", name) from e
        else:
            name = None
            produced = source

        if isinstance(produced, collections.abc.AsyncIterable):
            iterator = produced.__aiter__()
            try:
                while True:
                    try:
                        item = await iterator.__anext__()
                    except StopAsyncIteration:
                        break
                    except SlashError:
                        raise
                    except Exception as e:
                        raise CallError(f"producer '{name}' failed: {e}", name) from e
                    yield item
            finally:
                aclose = getattr(iterator, 'aclose', None)
                if aclose is not None:
                    await aclose()
        else:
            iterator = iter(produced)
            try:
                while True:
                    try:
                        item = next(iterator)
                    except StopIteration:
                        break
                    except SlashError:
                        raise
                    except Exception as e:
                        raise CallError(f"producer '{name}' failed: {e}", name) from e
                    yield item
            finally:
                close = getattr(iterator, 'close', None)
                if close is not None:
                    close()

    # --- Lists ---

    async def _list_value(self, source, env: Environment):
        match source:
            case ListLiteral():
                return await self.eval(source, env)
            case ListRef(name=name):
                value = env.lookup(name, LIST)
                return value if isinstance(value, IterableSource) else list(value)
            case ProducerExpr():
                return await self.eval(source, env)
            case VarRef(name=name):
                return self._coerce_list(env.lookup(name, VAR), f"${name}")
        return self._coerce_list(await self.eval(source, env), "value")

    def _coerce_list(self, value, label: str):
        if isinstance(value, IterableSource):
            return value
        if isinstance(value, (list, tuple)):
            return list(value)
        if isinstance(value, collections.abc.Mapping):
            return [Entry(v, {'key': k}) for k, v in value.items()]
        if isinstance(value, str):
            parsed = deserialize(value) if value.lstrip().startswith('[') else None
            if isinstance(parsed, list):
                return parsed
            return [line for line in value.splitlines() if line.strip()]
        if value is None or value is FALSY:
            return []
        raise ScriptError(f"{label} is not a list: {self.printer.pformat(value)}")

    def _producer(self, name: str):
        producers = getattr(self.capabilities, 'producers', None) or {}
        producer = producers.get(name)
        if producer is None:
            raise CallError(f"unknown producer '{name}'", name)
        return producer

    # --- Expressions ---

    async def eval(self, node, env: Environment) -> Any:
        match node:
            case Literal(value=value):
                return value
            case InterpolatedString():
                return node.render(lambda name: self.printer.to_text(env.get(name, None, VAR)))
            case VarRef(name=name):
                return env.lookup(name, VAR)
            case ListRef(name=name):
                value = env.lookup(name, LIST)
                return value if isinstance(value, IterableSource) else list(value)
            case ListLiteral(items=items):
                return [await self.eval(item, env) for item in items]
            case CallExpr():
                return await self.call(node, env)
            case ProducerExpr(name=name, args=args):
                producer = self._producer(name)
                values = [await self.eval(a, env) for a in args]
                return IterableSource(name, producer, tuple(values))
            case UnaryOp(op='!', operand=operand):
                return not is_truthy(await self.eval(operand, env))
            case UnaryOp(op='-', operand=operand):
                value = await self.eval(operand, env)
                number = _as_number(value)
                if number is None:
                    raise ScriptError(f"cannot negate {self.printer.pformat(value)}")
                return -number
            case BinaryOp(op='and', left=left, right=right):
                lhs = await self.eval(left, env)
                return await self.eval(right, env) if is_truthy(lhs) else lhs
            case BinaryOp(op='or', left=left, right=right):
                lhs = await self.eval(left, env)
                return lhs if is_truthy(lhs) else await self.eval(right, env)
            case BinaryOp(op=op, left=left, right=right):
                lhs = await self.eval(left, env)
                rhs = await self.eval(right, env)
                return self._binary(op, lhs, rhs)
        raise ScriptError(f"cannot evaluate {type(node).__name__}")

    def _binary(self, op: str, a, b):
        if op in ('==', '!=', '<', '>', '<=', '>='):
            return self._compare(op, a, b)
        if op == '+':
            if isinstance(a, list) and isinstance(b, list):
                return a + b
            na, nb = self._numeric_pair(a, b)
            if na is not None:
                return na + nb
            return self.printer.to_text(a) + self.printer.to_text(b)
        na, nb = _as_number(a), _as_number(b)
        if na is None or nb is None:
            raise ScriptError(
                f"unsupported operands for {op}: {self.printer.pformat(a)} and {self.printer.pformat(b)}")
        match op:
            case '-':
                return na - nb
            case '*':
                return na * nb
            case '/':
                if nb == 0:
                    raise ScriptError("division by zero")
                return na / nb
            case '%':
                if nb == 0:
                    raise ScriptError("division by zero")
                return na % nb
        raise ScriptError(f"unknown operator {op}")

    def _numeric_pair(self, a, b) -> Tuple[Any, Any]:
        """Both operands as numbers when one is a number and the other numeric text."""
        if _is_number(a) and _is_number(b):
            return a, b
        if _is_number(a) or _is_number(b):
            na, nb = _as_number(a), _as_number(b)
            if na is not None and nb is not None:
                return na, nb
        return None, None

    def _compare(self, op: str, a, b) -> bool:
        na, nb = self._numeric_pair(a, b)
        if na is not None:
            a, b = na, nb
        if a is FALSY:
            a = False
        if b is FALSY:
            b = False
        match op:
            case '==':
                return a == b
            case '!=':
                return a != b
        try:
            match op:
                case '<':
                    return a < b
                case '>':
                    return a > b
                case '<=':
                    return a <= b
                case '>=':
                    return a >= b
        except TypeError:
            raise ScriptError(
                f"cannot compare {self.printer.pformat(a)} {op} {self.printer.pformat(b)}") from None
        raise ScriptError(f"unknown operator {op}")

    # --- Functions ---

    def _push_frame(self, name, args, call_site):
        self.call_stack.append({'name': name, 'args': args, 'call_site': call_site})

    def _pop_frame(self):
        if self.call_stack:
            self.call_stack.pop()

    async def call(self, node: CallExpr, env: Environment) -> Any:
        definition = env.resolve_function(node.name)
        if definition is None:
            raise CallError(f"undefined function '{node.name}'", node.name).at(node.loc)
        args = [await self.eval(a, env) for a in node.args]
        if len(args) != definition.arity:
            raise CallError(
                f"function '{node.name}' expects {definition.arity} argument(s), got {len(args)}",
                node.name).at(node.loc)
        self._dbg("call", definition.kind, node.name, "argc", len(args))
        self._push_frame(node.name, args, node.loc)
        result = await self._invoke(definition, args, env)
        self._pop_frame()
        return result

    async def _invoke(self, definition: FunctionDefinition, args: list, env: Environment) -> Any:
        match definition.kind:
            case 'static':
                return self._render_body(definition, args, env)
            case 'llm':
                prompt = self._render_body(definition, args, env)
                llm = self._capability('llm', definition.name)
                return await self._external(definition.name, llm.invoke(prompt))
            case 'code':
                executor = self._capability('code', definition.name)
                params = dict(zip(definition.params, args))
                return await self._external(definition.name, executor.execute(definition.body, params))
        raise CallError(f"function '{definition.name}' has unknown kind {definition.kind!r}", definition.name)

    def _render_body(self, definition: FunctionDefinition, args: list, env: Environment) -> str:
        scope = env.child()
        for param, value in zip(definition.params, args):
            scope.declare(param, value)
        body: InterpolatedString = definition.body
        return body.render(lambda name: self.printer.to_text(scope.get(name, None, VAR)))

    def _capability(self, kind: str, who: str):
        cap = getattr(self.capabilities, kind, None) if self.capabilities is not None else None
        if cap is None:
            raise CallError(f"no {kind} capability is available for {who}", who)
        return cap

    # --- Suspension points ---

    async def _external(self, who: str, awaitable) -> Any:
        """Awaits a capability call, wrapping its failures as CallError."""
        try:
            return await self._suspend(awaitable)
        except SlashError:
            raise
        except Exception as e:
            raise CallError(f"{who} failed: {type(e).__name__}: {e}", who) from e

    async def _suspend(self, awaitable) -> Any:
        """Races an external call against the run's cancellation signal."""
        if self.context.is_cancelled:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise CancelledError("run cancelled")
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.context.cancelled.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (task, waiter):
                if not fut.done():
                    fut.cancel()
            await asyncio.gather(task, waiter, return_exceptions=True)
        if task in done:
            return task.result()
        self._dbg("cancelled while suspended")
        raise CancelledError("run cancelled")

    # --- Output ---

    async def _emit(self, topic: str, message: str):
        self.side_effects.append({'topics': [topic], 'message': message})
        output = getattr(self.context, 'output', None)
        if output is not None:
            res = output(topic, message)
            if inspect.isawaitable(res):
                await res

    async def _report(self, error: SlashError):
        await self._emit('stderr', f"{type(error).__name__}: {error}")

    # --- Nested scripts ---

    async def _script(self, stmt: ScriptInvoke, env: Environment) -> Any:
        if self.scripts is None:
            raise ScriptError("no script registry is available")
        match stmt.action:
            case 'list':
                text = self.printer.render_scripts(self.scripts.list())
                await self._emit('stdout', text)
                return text
            case 'info':
                text = self.printer.render_script_info(self.scripts.get(stmt.name))
                await self._emit('stdout', text)
                return text
        argument = await self._text_argument(stmt.argument, env) if stmt.argument is not None else ""
        if self.script_depth >= self.max_script_depth:
            raise ScriptError(f"script nesting deeper than {self.max_script_depth}")
        statements = self.scripts.parse(stmt.name)
        nested = top_level_environment(env.root.functions, argument)
        self._dbg("script run", stmt.name, "depth", self.script_depth + 1)
        self._push_frame(f"script:{stmt.name}", [argument], stmt.loc)
        self.script_depth += 1
        try:
            result = await self._exec_block(statements, nested)
        except SlashError as e:
            if e.script is None:
                e.script = stmt.name
            raise
        finally:
            self.script_depth -= 1
        self._pop_frame()
        return result

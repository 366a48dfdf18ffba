"""
Parses the token stream into the immutable statement AST in slash_datatypes.
"""
from typing import Any, List, Optional, Tuple

from slashscript.slash_datatypes import (
    ParseError, InterpolatedString, Literal, VarRef, ListRef, ListLiteral,
    CallExpr, ProducerExpr, UnaryOp, BinaryOp, FunctionDefinition,
    VarAssign, VarDelete, ListDefine, ListAppend, FuncDefine, FuncDelete, Call,
    Echo, Sleep, Prompt, Confirm, If, For, While, ScriptInvoke,
    ShowVars, ShowFuncs, Break, Continue, VAR, LIST,
)
from slashscript.slash_lexer import Lexer, Token, normalize_source, split_interpolation

COMMANDS = (
    '/var', '/vars', '/list', '/func', '/funcs', '/call', '/echo', '/sleep',
    '/prompt', '/confirm', '/if', '/for', '/while', '/break', '/continue', '/script',
)
SCRIPT_ACTIONS = ('run', 'list', 'info')
FUNC_KINDS = {'static': 'static', 'llm': 'llm', 'js': 'code', 'code': 'code'}
COMPARISONS = ('==', '!=', '<', '>', '<=', '>=')
KEYWORD_LITERALS = {'true': True, 'false': False, 'null': None, 'none': None}
_TERMINATORS = ('NEWLINE', 'SEMI', 'EOF')


class Parser:
    """Parses script text into a tuple of statements.

    Parsing has no side effects, so a parsed script can be cached and run any
    number of times.
    """
    def __init__(self, lexer: Optional[Lexer] = None):
        self.lexer = lexer or Lexer()

    def parse(self, text: str) -> Tuple[Any, ...]:
        source = normalize_source(text)
        tokens = self.lexer.tokenize(source)
        return _StatementReader(tokens, source).program()


def parse(text: str) -> Tuple[Any, ...]:
    return Parser().parse(text)


class _StatementReader:
    def __init__(self, tokens: List[Token], source: str):
        if tokens:
            last = tokens[-1]
            eof = Token('EOF', '', last.line, last.col + len(last.lexeme), len(source))
        else:
            eof = Token('EOF', '', 1, 1, 0)
        self.tokens = tokens + [eof]
        self.source = source
        self.pos = 0
        self.loop_depth = 0
        self.command: Optional[str] = None

    # --- Token helpers ---

    def peek(self, ahead: int = 0) -> Token:
        idx = min(self.pos + ahead, len(self.tokens) - 1)
        return self.tokens[idx]

    def advance(self) -> Token:
        tok = self.tokens[self.pos]
        if tok.kind != 'EOF':
            self.pos += 1
        return tok

    def at(self, kind: str, lexeme: Optional[str] = None) -> bool:
        tok = self.peek()
        return tok.kind == kind and (lexeme is None or tok.lexeme == lexeme)

    def accept(self, kind: str, lexeme: Optional[str] = None) -> Optional[Token]:
        if self.at(kind, lexeme):
            return self.advance()
        return None

    def error(self, message: str, tok: Optional[Token] = None, kind: str = "SyntaxError") -> ParseError:
        tok = tok or self.peek()
        where = f"{self.command}: " if self.command else ""
        found = "end of input" if tok.kind == 'EOF' else repr(tok.lexeme)
        return ParseError(f"{where}{message} (found {found})", tok.line, tok.col,
                          kind=kind, command=self.command)

    def expect(self, kind: str, lexeme: Optional[str] = None, what: Optional[str] = None) -> Token:
        if self.at(kind, lexeme):
            return self.advance()
        raise self.error(f"expected {what or lexeme or kind.lower()}")

    def skip_newlines(self):
        while self.peek().kind == 'NEWLINE':
            self.advance()

    def at_end_of_statement(self) -> bool:
        return self.peek().kind in _TERMINATORS or self.peek().kind == 'RBRACE'

    # --- Program structure ---

    def program(self) -> Tuple[Any, ...]:
        statements = self.statements(until=None)
        if not self.at('EOF'):
            raise self.error("unexpected token")
        return statements

    def statements(self, until: Optional[str]) -> Tuple[Any, ...]:
        out = []
        while True:
            while self.peek().kind in ('NEWLINE', 'SEMI'):
                self.advance()
            tok = self.peek()
            if tok.kind == 'EOF' or (until is not None and tok.kind == until):
                break
            out.append(self.statement())
            if not self.at_end_of_statement():
                raise self.error("unexpected token after statement")
        return tuple(out)

    def block(self, loop: bool = False) -> Tuple[Any, ...]:
        command = self.command
        self.skip_newlines()
        self.expect('LBRACE', what="'{' to open a block")
        if loop:
            self.loop_depth += 1
        try:
            body = self.statements(until='RBRACE')
        finally:
            if loop:
                self.loop_depth -= 1
        self.command = command
        if not self.accept('RBRACE'):
            raise self.error("unterminated block, expected '}'")
        return body

    def statement(self):
        tok = self.peek()
        if tok.kind != 'COMMAND':
            raise self.error("expected a /command")
        self.advance()
        self.command = tok.lexeme
        loc = tok.loc
        match tok.lexeme:
            case '/var':
                return self._var(loc)
            case '/vars':
                return ShowVars(loc=loc)
            case '/list':
                return self._list(loc)
            case '/func':
                return self._func(loc)
            case '/funcs':
                return ShowFuncs(loc=loc)
            case '/call':
                return Call(self.call_expr(loc), loc=loc)
            case '/echo':
                return Echo(self.rest_argument(), loc=loc)
            case '/sleep':
                if self.at_end_of_statement():
                    raise self.error("missing duration", kind="MissingArgument")
                return Sleep(self.expression(), loc=loc)
            case '/prompt' | '/confirm':
                name = self.expect('VAR', what="a $name to bind the answer to")
                message = None if self.at_end_of_statement() else self.expression()
                node = Prompt if tok.lexeme == '/prompt' else Confirm
                return node(name.lexeme[1:], message, loc=loc)
            case '/if':
                return self._if(loc)
            case '/for':
                return self._for(loc)
            case '/while':
                if self.at_end_of_statement():
                    raise self.error("missing condition", kind="MissingArgument")
                cond = self.expression()
                return While(cond, self.block(loop=True), loc=loc)
            case '/break' | '/continue':
                if self.loop_depth == 0:
                    raise self.error("only allowed inside /for or /while", tok)
                return Break(loc=loc) if tok.lexeme == '/break' else Continue(loc=loc)
            case '/script':
                return self._script(loc)
            case _:
                raise ParseError(f"unknown command {tok.lexeme}", tok.line, tok.col,
                                 kind="UnknownCommand", command=tok.lexeme)

    # --- Commands ---

    def _var(self, loc):
        if self.accept('WORD', 'delete'):
            name = self.expect('VAR', what="a $name")
            return VarDelete(name.lexeme[1:], VAR, loc=loc)
        declare = self.accept('WORD', 'local') is not None
        name = self.expect('VAR', what="a $name")
        self.accept('OP', '=')
        if self.at_end_of_statement():
            raise self.error("missing value", kind="MissingArgument")
        return VarAssign(name.lexeme[1:], self.expression(), declare, loc=loc)

    def _list(self, loc):
        if self.accept('WORD', 'delete'):
            name = self.expect('LIST', what="an @name")
            return VarDelete(name.lexeme[1:], LIST, loc=loc)
        if self.accept('WORD', 'append'):
            name = self.expect('LIST', what="an @name")
            if self.at_end_of_statement():
                raise self.error("missing value", kind="MissingArgument")
            return ListAppend(name.lexeme[1:], self.expression(), loc=loc)
        declare = self.accept('WORD', 'local') is not None
        name = self.expect('LIST', what="an @name")
        self.accept('OP', '=')
        return ListDefine(name.lexeme[1:], self.list_source(), declare, loc=loc)

    def list_source(self):
        tok = self.peek()
        match tok.kind:
            case 'LBRACKET':
                return self.list_literal()
            case 'LIST':
                self.advance()
                return ListRef(tok.lexeme[1:], loc=tok.loc)
            case 'VAR':
                self.advance()
                return VarRef(tok.lexeme[1:], loc=tok.loc)
            case 'WORD' if self.peek(1).kind == 'LPAREN':
                self.advance()
                return ProducerExpr(tok.lexeme, self.arguments(), loc=tok.loc)
        raise self.error("expected [items], @list, $value or producer(args)", kind="MissingArgument")

    def _func(self, loc):
        if self.accept('WORD', 'delete'):
            name = self.expect('WORD', what="a function name")
            return FuncDelete(name.lexeme, loc=loc)
        kind_tok = self.peek()
        if kind_tok.kind != 'WORD' or kind_tok.lexeme not in FUNC_KINDS:
            raise self.error("expected a function kind: static, llm, js or code")
        self.advance()
        kind = FUNC_KINDS[kind_tok.lexeme]
        name = self.expect('WORD', what="a function name")
        params = self.parameters() if self.at('LPAREN') else ()
        if kind == 'code':
            self.skip_newlines()
            self.expect('LBRACE', what="'{' to open the code body")
            body = self.expect('CODE', what="a code body").lexeme
            self.expect('RBRACE', what="'}' to close the code body")
            definition = FunctionDefinition(name.lexeme, params, kind, body, kind_tok.lexeme, loc=loc)
        else:
            if not (self.accept('OP', '=>') or self.accept('OP', '=')):
                raise self.error("expected '=>' before the function body")
            body_tok = self.expect('STRING', what='a "quoted" body')
            body = InterpolatedString(body_tok.parts, loc=body_tok.loc)
            definition = FunctionDefinition(name.lexeme, params, kind, body, loc=loc)
        return FuncDefine(definition, loc=loc)

    def parameters(self) -> Tuple[str, ...]:
        self.expect('LPAREN')
        names: List[str] = []
        self.skip_newlines()
        while not self.at('RPAREN'):
            tok = self.peek()
            if tok.kind == 'VAR':
                name = tok.lexeme[1:]
            elif tok.kind == 'WORD':
                name = tok.lexeme
            else:
                raise self.error("expected a parameter name")
            self.advance()
            if name in names:
                raise self.error(f"duplicate parameter '{name}'", tok)
            names.append(name)
            self.skip_newlines()
            if not self.accept('COMMA'):
                break
            self.skip_newlines()
        self.expect('RPAREN', what="')' to close the parameter list")
        return tuple(names)

    def _if(self, loc):
        if self.at_end_of_statement():
            raise self.error("missing condition", kind="MissingArgument")
        cond = self.expression()
        body = self.block()
        orelse: Tuple[Any, ...] = ()
        ahead = 0
        while self.peek(ahead).kind == 'NEWLINE':
            ahead += 1
        if self.peek(ahead).kind == 'WORD' and self.peek(ahead).lexeme == 'else':
            self.skip_newlines()
            self.advance()
            nested = self.peek()
            if (nested.kind == 'WORD' and nested.lexeme == 'if') or (nested.kind == 'COMMAND' and nested.lexeme == '/if'):
                self.advance()
                self.command = '/if'
                orelse = (self._if(nested.loc),)
            else:
                orelse = self.block()
        self.command = '/if'
        return If(cond, body, orelse, loc=loc)

    def _for(self, loc):
        name = self.expect('VAR', what="a $name for each item")
        self.expect('WORD', 'in', what="'in'")
        tok = self.peek()
        if tok.kind == 'LBRACE' or self.at_end_of_statement():
            raise self.error("missing list to iterate", kind="MissingArgument")
        iterable = self.list_source()
        return For(name.lexeme[1:], iterable, self.block(loop=True), loc=loc)

    def _script(self, loc):
        action = self.peek()
        if action.kind != 'WORD' or action.lexeme not in SCRIPT_ACTIONS:
            raise self.error("expected run, list or info", kind="MissingArgument")
        self.advance()
        if action.lexeme == 'list':
            return ScriptInvoke('list', loc=loc)
        name = self.expect('WORD', what="a script name")
        argument = None
        if action.lexeme == 'run' and not self.at_end_of_statement():
            argument = self.rest_argument()
        return ScriptInvoke(action.lexeme, name.lexeme, argument, loc=loc)

    # --- Arguments ---

    def rest_argument(self):
        """Reads the rest of the line as one expression, or as raw interpolated text."""
        start = self.pos
        end = start
        depth = 0
        while True:
            kind = self.tokens[end].kind
            if kind in _TERMINATORS:
                break
            if kind == 'LBRACE':
                depth += 1
            elif kind == 'RBRACE':
                if depth == 0:
                    break
                depth -= 1
            end += 1
        if start == end:
            return Literal("", loc=self.peek().loc)
        try:
            expr = self.expression()
            if self.pos == end:
                return expr
        except ParseError:
            pass
        self.pos = end
        first, last = self.tokens[start], self.tokens[end - 1]
        text = self.source[first.offset:last.end]
        return InterpolatedString(split_interpolation(text), loc=first.loc)

    def call_expr(self, loc) -> CallExpr:
        name = self.expect('WORD', what="a function name")
        args = self.arguments() if self.at('LPAREN') else ()
        return CallExpr(name.lexeme, args, loc=loc)

    def arguments(self) -> Tuple[Any, ...]:
        self.expect('LPAREN')
        args = []
        self.skip_newlines()
        while not self.at('RPAREN'):
            args.append(self.expression())
            self.skip_newlines()
            if not self.accept('COMMA'):
                break
            self.skip_newlines()
        self.expect('RPAREN', what="')' to close the argument list")
        return tuple(args)

    def list_literal(self) -> ListLiteral:
        open_tok = self.expect('LBRACKET')
        items = []
        self.skip_newlines()
        while not self.at('RBRACKET'):
            items.append(self.expression())
            self.skip_newlines()
            if not self.accept('COMMA'):
                break
            self.skip_newlines()
        self.expect('RBRACKET', what="']' to close the list")
        return ListLiteral(tuple(items), loc=open_tok.loc)

    # --- Expressions ---

    def expression(self):
        return self._or()

    def _or(self):
        left = self._and()
        while self.at('OP', '||') or self.at('WORD', 'or'):
            tok = self.advance()
            left = BinaryOp('or', left, self._and(), loc=tok.loc)
        return left

    def _and(self):
        left = self._comparison()
        while self.at('OP', '&&') or self.at('WORD', 'and'):
            tok = self.advance()
            left = BinaryOp('and', left, self._comparison(), loc=tok.loc)
        return left

    def _comparison(self):
        left = self._additive()
        tok = self.peek()
        if tok.kind == 'OP' and tok.lexeme in COMPARISONS:
            self.advance()
            return BinaryOp(tok.lexeme, left, self._additive(), loc=tok.loc)
        return left

    def _additive(self):
        left = self._term()
        while self.peek().kind == 'OP' and self.peek().lexeme in ('+', '-'):
            tok = self.advance()
            left = BinaryOp(tok.lexeme, left, self._term(), loc=tok.loc)
        return left

    def _term(self):
        left = self._unary()
        while self.peek().kind == 'OP' and self.peek().lexeme in ('*', '/', '%'):
            tok = self.advance()
            left = BinaryOp(tok.lexeme, left, self._unary(), loc=tok.loc)
        return left

    def _unary(self):
        tok = self.peek()
        if (tok.kind == 'OP' and tok.lexeme in ('!', '-')) or (tok.kind == 'WORD' and tok.lexeme == 'not'):
            self.advance()
            op = '-' if tok.lexeme == '-' else '!'
            return UnaryOp(op, self._unary(), loc=tok.loc)
        return self._primary()

    def _primary(self):
        tok = self.peek()
        match tok.kind:
            case 'STRING':
                self.advance()
                return InterpolatedString(tok.parts, loc=tok.loc)
            case 'RAW_STRING':
                self.advance()
                return Literal(tok.lexeme[1:-1], loc=tok.loc)
            case 'NUMBER':
                self.advance()
                txt = tok.lexeme
                return Literal(float(txt) if '.' in txt else int(txt), loc=tok.loc)
            case 'WORD' if tok.lexeme in KEYWORD_LITERALS:
                self.advance()
                return Literal(KEYWORD_LITERALS[tok.lexeme], loc=tok.loc)
            case 'VAR':
                self.advance()
                return VarRef(tok.lexeme[1:], loc=tok.loc)
            case 'LIST':
                self.advance()
                return ListRef(tok.lexeme[1:], loc=tok.loc)
            case 'LBRACKET':
                return self.list_literal()
            case 'LPAREN':
                self.advance()
                self.skip_newlines()
                inner = self.expression()
                self.skip_newlines()
                self.expect('RPAREN', what="')'")
                return inner
            case 'COMMAND' if tok.lexeme == '/call':
                self.advance()
                return self.call_expr(tok.loc)
        raise self.error("expected an expression", kind="MissingArgument")

"""
Turns raw script text into a flat token stream.

Tokenizing is delegated to koine's StatefulLexer driven by the table in
grammar/slash_lexer.yaml. A post-pass then does what a regular token table
cannot: it folds opaque `/func js|code` bodies into a single CODE token,
rejects stray quotes and sigils, checks brace balance, and splits string
literals into interpolation parts.
"""
import re
from bisect import bisect_right
from dataclasses import dataclass
from pathlib import Path
from textwrap import dedent
from typing import List, Optional, Tuple, Union

import yaml
from koine.parser import StatefulLexer

from slashscript.slash_datatypes import LexError, VarPart

GRAMMAR_PATH = Path(__file__).parent / "grammar" / "slash_lexer.yaml"

CODE_KINDS = ("js", "code")
_IDENT = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_KOINE_POS = re.compile(r"L(\d+):C(\d+)")
_ESCAPES = {'n': '\n', 't': '\t', '"': '"', '\\': '\\', '$': '$'}


@dataclass(frozen=True)
class Token:
    kind: str
    lexeme: str
    line: int
    col: int
    offset: int
    parts: Optional[Tuple[Union[str, VarPart], ...]] = None

    @property
    def loc(self) -> Tuple[int, int]:
        return (self.line, self.col)

    @property
    def end(self) -> int:
        return self.offset + len(self.lexeme)

    def __repr__(self):
        return f"Token({self.kind}, {self.lexeme!r}, L{self.line}:C{self.col})"


def normalize_source(text: str) -> str:
    """Apply the same newline and tab normalization the lexer sees."""
    return text.replace('\r\n', '\n').replace('\r', '\n').expandtabs(8)


def split_interpolation(raw: str) -> Tuple[Union[str, VarPart], ...]:
    """Splits the inside of a double-quoted string into literal and $name parts.

    `$name` and `${name}` are references; a `$` not followed by an identifier
    stays literal. Backslash escapes are decoded here.
    """
    parts: List[Union[str, VarPart]] = []
    buf: List[str] = []
    i = 0
    n = len(raw)
    while i < n:
        ch = raw[i]
        if ch == '\\' and i + 1 < n:
            nxt = raw[i + 1]
            buf.append(_ESCAPES.get(nxt, '\\' + nxt))
            i += 2
            continue
        if ch == '$':
            if raw.startswith('${', i):
                close = raw.find('}', i + 2)
                name = raw[i + 2:close] if close != -1 else ''
                if close != -1 and _IDENT.fullmatch(name):
                    if buf:
                        parts.append(''.join(buf)); buf = []
                    parts.append(VarPart(name))
                    i = close + 1
                    continue
            m = _IDENT.match(raw, i + 1)
            if m:
                if buf:
                    parts.append(''.join(buf)); buf = []
                parts.append(VarPart(m.group(0)))
                i = m.end()
                continue
        buf.append(ch)
        i += 1
    if buf:
        parts.append(''.join(buf))
    return tuple(parts)


def _dedent_body(body: str) -> str:
    """Dedents a code body whose first line may sit right after the opening brace."""
    first, _, rest = body.partition('\n')
    if not first.strip():
        return dedent(rest).strip()
    return (first.strip() + '\n' + dedent(rest)).strip()


class Lexer:
    """Produces Tokens for a script, or raises LexError with a position."""

    _config: Optional[dict] = None

    def __init__(self, grammar_path: Optional[Path] = None):
        if grammar_path is not None:
            config = yaml.safe_load(Path(grammar_path).read_text(encoding="utf-8"))
        else:
            if Lexer._config is None:
                Lexer._config = yaml.safe_load(GRAMMAR_PATH.read_text(encoding="utf-8"))
            config = Lexer._config
        self._lexer = StatefulLexer(config['lexer'])

    def tokenize(self, text: str) -> List[Token]:
        source = normalize_source(text)
        line_starts = [0] + [i + 1 for i, ch in enumerate(source) if ch == '\n']

        def offset_of(line: int, col: int) -> int:
            return line_starts[line - 1] + col - 1

        def position_of(offset: int) -> Tuple[int, int]:
            line = bisect_right(line_starts, offset)
            return line, offset - line_starts[line - 1] + 1

        try:
            raw_tokens = self._lexer.tokenize(source)
        except SyntaxError as e:
            m = _KOINE_POS.search(str(e))
            line, col = (int(m.group(1)), int(m.group(2))) if m else (None, None)
            offset = offset_of(line, col) if line is not None else None
            raise LexError(f"unexpected character ({e})", line, col, offset) from e

        tokens = [Token(t.type, t.value, t.line, t.col, offset_of(t.line, t.col)) for t in raw_tokens]
        tokens = self._fold_code_bodies(tokens, source, position_of)
        self._check(tokens)
        return [self._decode(t) for t in tokens]

    # --- Post-pass ---

    def _fold_code_bodies(self, tokens: List[Token], source: str, position_of) -> List[Token]:
        out: List[Token] = []
        i = 0
        n = len(tokens)
        while i < n:
            tok = tokens[i]
            out.append(tok)
            i += 1
            if not (tok.kind == 'COMMAND' and tok.lexeme == '/func'):
                continue
            if not (i < n and tokens[i].kind == 'WORD' and tokens[i].lexeme in CODE_KINDS):
                continue
            # Copy the header up to the opening brace, which may sit on a later line
            j = i
            while j < n and tokens[j].kind not in ('LBRACE', 'SEMI', 'COMMAND'):
                j += 1
            if j >= n or tokens[j].kind != 'LBRACE':
                continue
            out.extend(tokens[i:j])
            open_brace = tokens[j]
            depth = 0
            k = j
            while k < n:
                if tokens[k].kind == 'LBRACE':
                    depth += 1
                elif tokens[k].kind == 'RBRACE':
                    depth -= 1
                    if depth == 0:
                        break
                k += 1
            if k >= n:
                raise LexError("unterminated code body", open_brace.line, open_brace.col, open_brace.offset)
            close_brace = tokens[k]
            body = source[open_brace.end:close_brace.offset]
            body_offset = open_brace.end
            line, col = position_of(body_offset)
            out.append(open_brace)
            out.append(Token('CODE', _dedent_body(body), line, col, body_offset))
            out.append(close_brace)
            i = k + 1
        return out

    def _check(self, tokens: List[Token]):
        stack: List[Token] = []
        for tok in tokens:
            if tok.kind == 'RAW':
                if tok.lexeme == '"':
                    raise LexError("unterminated string", tok.line, tok.col, tok.offset)
                if tok.lexeme in ('$', '@'):
                    raise LexError(f"invalid sigil '{tok.lexeme}': expected a name after it",
                                   tok.line, tok.col, tok.offset)
            elif tok.kind == 'LBRACE':
                stack.append(tok)
            elif tok.kind == 'RBRACE':
                if not stack:
                    raise LexError("unmatched '}'", tok.line, tok.col, tok.offset)
                stack.pop()
        if stack:
            tok = stack[-1]
            raise LexError("unclosed '{'", tok.line, tok.col, tok.offset)

    def _decode(self, tok: Token) -> Token:
        if tok.kind != 'STRING':
            return tok
        parts = split_interpolation(tok.lexeme[1:-1])
        return Token(tok.kind, tok.lexeme, tok.line, tok.col, tok.offset, parts)


def tokenize(text: str) -> List[Token]:
    return Lexer().tokenize(text)

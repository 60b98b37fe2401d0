#!/usr/bin/env python3
"""
description_lexer.py - Tokenizer for DBC, LDF and NCF description files

All three formats share one lexical shape: identifiers, numbers, quoted
strings and single-character punctuation separated by whitespace. They
differ in which punctuation they use and whether C-style comments exist,
which is captured by a Dialect.

Usage:
    from description_lexer import tokenize, Dialect

    for token in tokenize(text, Dialect.LDF):
        print(token.kind, token.value, token.line, token.column)

tokenize() is a generator: it does no work until iterated and can be
restarted by calling it again on the same text.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, Optional, Union

from diagnostics import LexError, ParseError, SourcePosition


class Dialect(Enum):
    DBC = 'dbc'
    LDF = 'ldf'
    NCF = 'ncf'


class TokenKind(Enum):
    IDENT = 'identifier'
    INT = 'integer'
    FLOAT = 'number'
    STRING = 'string'
    PUNCT = 'punctuation'
    EOF = 'end of file'


PUNCTUATION = {
    Dialect.DBC: frozenset(':;|@()[],+-'),
    Dialect.LDF: frozenset(':;={},()[]+-%'),
    Dialect.NCF: frozenset(':;={},()[]+-%'),
}

HAS_COMMENTS = {
    Dialect.DBC: False,
    Dialect.LDF: True,
    Dialect.NCF: True,
}

_IDENT_RE = re.compile(r'[A-Za-z_][A-Za-z0-9_]*')
_NUMBER_RE = re.compile(r'''
    [+-]?
    (?:
        0[xX][0-9A-Fa-f]+                   # hexadecimal
      | (?:\d+\.\d*|\.\d+|\d+)              # decimal / fraction
        (?:[eE][+-]?\d+)?                   # exponent
    )
''', re.VERBOSE | re.ASCII)
_SIGNED_START_RE = re.compile(r'[+-](?:\d|\.\d)', re.ASCII)
_DIGITS = frozenset('0123456789')


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    value: Union[str, int, float]
    line: int
    column: int
    text: str = ''

    @property
    def position(self) -> SourcePosition:
        return SourcePosition(self.line, self.column)

    def is_ident(self, name: str = None) -> bool:
        return self.kind == TokenKind.IDENT and (name is None or self.value == name)

    def is_punct(self, char: str) -> bool:
        return self.kind == TokenKind.PUNCT and self.value == char

    @property
    def is_number(self) -> bool:
        return self.kind in (TokenKind.INT, TokenKind.FLOAT)

    def describe(self) -> str:
        """Human-readable form used in parse diagnostics."""
        if self.kind == TokenKind.EOF:
            return 'end of file'
        if self.kind == TokenKind.STRING:
            return f'string "{self.value}"'
        return f'{self.kind.value} {self.text or self.value!r}'


def _number_value(text: str) -> Union[int, float]:
    body = text.lstrip('+-')
    negative = text.startswith('-')
    if body[:2] in ('0x', '0X'):
        value = int(body, 16)
        return -value if negative else value
    if re.fullmatch(r'\d+', body):
        value = int(body, 10)
        return -value if negative else value
    return float(text)


def tokenize(text: str, dialect: Dialect = Dialect.DBC) -> Iterator[Token]:
    """Yield tokens for text; the final token is always EOF."""
    punctuation = PUNCTUATION[dialect]
    comments = HAS_COMMENTS[dialect]
    pos = 0
    line = 1
    line_start = 0
    length = len(text)

    while pos < length:
        ch = text[pos]

        if ch == '\n':
            pos += 1
            line += 1
            line_start = pos
            continue
        if ch.isspace():
            pos += 1
            continue

        column = pos - line_start + 1

        # comments
        if comments and ch == '/' and pos + 1 < length and text[pos + 1] in '/*':
            if text[pos + 1] == '/':
                end = text.find('\n', pos)
                pos = length if end < 0 else end
            else:
                end = text.find('*/', pos + 2)
                if end < 0:
                    raise LexError('unterminated block comment', line, column)
                skipped = text[pos:end + 2]
                newlines = skipped.count('\n')
                if newlines:
                    line += newlines
                    line_start = pos + skipped.rfind('\n') + 1
                pos = end + 2
            continue

        # strings
        if ch == '"':
            chars = []
            i = pos + 1
            start_line = line
            while True:
                if i >= length:
                    raise LexError('unterminated string', start_line, column)
                c = text[i]
                if c == '\\' and i + 1 < length and text[i + 1] in '"\\':
                    chars.append(text[i + 1])
                    i += 2
                    continue
                if c == '"':
                    break
                if c == '\n':
                    line += 1
                    line_start = i + 1
                chars.append(c)
                i += 1
            yield Token(TokenKind.STRING, ''.join(chars), start_line, column, text[pos:i + 1])
            pos = i + 1
            continue

        # numbers (a sign only belongs to a number when a digit follows)
        if ch in _DIGITS or (ch == '.' and pos + 1 < length and text[pos + 1] in _DIGITS) \
                or _SIGNED_START_RE.match(text, pos):
            m = _NUMBER_RE.match(text, pos)
            end = m.end()
            if end < length and (text[end].isalnum() or text[end] in '._'):
                bad = re.match(r'[\w.+-]*', text[pos:]).group()
                raise LexError(f'invalid numeric literal {bad!r}', line, column)
            literal = m.group()
            value = _number_value(literal)
            kind = TokenKind.INT if isinstance(value, int) else TokenKind.FLOAT
            yield Token(kind, value, line, column, literal)
            pos = end
            continue

        # identifiers
        m = _IDENT_RE.match(text, pos)
        if m:
            yield Token(TokenKind.IDENT, m.group(), line, column, m.group())
            pos = m.end()
            continue

        if ch in punctuation:
            yield Token(TokenKind.PUNCT, ch, line, column, ch)
            pos += 1
            continue

        raise LexError(f'disallowed character {ch!r}', line, column)

    yield Token(TokenKind.EOF, '', line, pos - line_start + 1)


class TokenStream:
    """
    One-token-lookahead cursor over a token iterable.

    The expect_* helpers raise ParseError describing what was wanted and
    what was found; parsers catch it at section level to recover.
    """

    def __init__(self, tokens: Iterable[Token]):
        self._tokens = iter(tokens)
        self._lookahead: Optional[Token] = None
        self.previous: Optional[Token] = None

    def peek(self) -> Token:
        if self._lookahead is None:
            self._lookahead = next(self._tokens, None)
            if self._lookahead is None:
                line = self.previous.line if self.previous else 1
                self._lookahead = Token(TokenKind.EOF, '', line, 1)
        return self._lookahead

    def next(self) -> Token:
        token = self.peek()
        if token.kind != TokenKind.EOF:
            self._lookahead = None
        self.previous = token
        return token

    @property
    def at_eof(self) -> bool:
        return self.peek().kind == TokenKind.EOF

    def _fail(self, expected: str) -> ParseError:
        token = self.peek()
        return ParseError(expected, token.describe(), token.position)

    def accept_punct(self, char: str) -> bool:
        if self.peek().is_punct(char):
            self.next()
            return True
        return False

    def accept_ident(self, name: str) -> bool:
        if self.peek().is_ident(name):
            self.next()
            return True
        return False

    def expect_punct(self, char: str) -> Token:
        if not self.peek().is_punct(char):
            raise self._fail(f"'{char}'")
        return self.next()

    def expect_ident(self, name: str = None) -> str:
        if not self.peek().is_ident(name):
            raise self._fail(name if name else 'identifier')
        return self.next().value

    def expect_int(self) -> int:
        if self.peek().kind != TokenKind.INT:
            raise self._fail('integer')
        return self.next().value

    def expect_number(self) -> Union[int, float]:
        if not self.peek().is_number:
            raise self._fail('number')
        return self.next().value

    def expect_string(self) -> str:
        if self.peek().kind != TokenKind.STRING:
            raise self._fail('string')
        return self.next().value

    def skip_past(self, char: str) -> None:
        """Discard tokens up to and including the next `char` punctuation."""
        while not self.at_eof:
            if self.next().is_punct(char):
                return

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, List, Optional


@dataclass(frozen=True)
class Position:
    source_path: str
    row: int


class FuncError(Exception):
    """Base class for interpreter errors."""

    kind = "Error"

    def __init__(self, message: str, position: Optional[Position] = None) -> None:
        super().__init__(message)
        self.message = message
        self.position = position

    def format_report(self) -> str:
        if self.position is None:
            return f"{self.kind}: {self.message}."
        return f"{self.kind}: {self.message} in {self.position.source_path}, line {self.position.row}."


class LexingError(FuncError):
    """Raised when scanning fails."""

    kind = "LexingError"


@dataclass(frozen=True)
class Token:
    type: str
    lexeme: str
    literal: Any
    position: Position


KEYWORDS = {
    "let": "LET",
    "func": "FUNC",
    "if": "IF",
    "else": "ELSE",
    "true": "TRUE",
    "false": "FALSE",
    "nil": "NIL",
    "read": "READ",
    "write": "WRITE",
    "push": "PUSH",
    "pop": "POP",
    "return": "RETURN",
}

LITERALS = {
    "TRUE": True,
    "FALSE": False,
    "NIL": None,
}

SYMBOLS = {
    "(": "LPAREN",
    ")": "RPAREN",
    "{": "LBRACE",
    "}": "RBRACE",
    "[": "LBRACKET",
    "]": "RBRACKET",
    ",": "COMMA",
    ";": "SEMICOLON",
    "=": "EQUALS",
    "+": "PLUS",
    "-": "MINUS",
    "*": "STAR",
    "/": "SLASH",
    "%": "PERCENT",
    ">": "GREATER",
    "<": "LESS",
    "!": "BANG",
}

DIGITS = "0123456789"

DOUBLE_SYMBOLS = {
    "==": "EQUAL_EQUAL",
    "!=": "BANG_EQUAL",
    ">=": "GREATER_EQUAL",
    "<=": "LESS_EQUAL",
    "&&": "AND",
    "||": "OR",
}


class Lexer:
    def __init__(self, source_path: str, text: str) -> None:
        self.source_path = source_path
        self.text = text
        self.index = 0
        self.row = 1

    def lex(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        text = self.text
        n = len(text)

        while self.index < n:
            ch: str = text[self.index]
            if ch in " \t\r\n":
                _advance()
                continue
            if ch == "/" and self._peek_next() == "/":
                self._consume_comment()
                continue
            pair = text[self.index:self.index + 2]
            if pair in DOUBLE_SYMBOLS:
                tokens_append(self._token(DOUBLE_SYMBOLS[pair], pair))
                _advance()
                _advance()
                continue
            if ch in SYMBOLS:
                tokens_append(self._token(SYMBOLS[ch], ch))
                _advance()
                continue
            if ch == '"':
                tokens_append(self._consume_string())
                continue
            if ch in DIGITS:
                tokens_append(self._consume_number())
                continue
            if ch.isalpha() or ch == "_":
                tokens_append(self._consume_identifier())
                continue
            raise LexingError(f"Unexpected character `{ch}`", self._position())
        tokens_append(self._token("EOF", ""))
        return tokens

    def _consume_comment(self) -> None:
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n and text[self.index] != "\n":
            _advance()

    def _consume_string(self) -> Token:
        position = self._position()
        self._advance()  # opening quote
        chars: List[str] = []
        while not self._eof:
            ch = self._peek()
            if ch == '"':
                self._advance()
                value = "".join(chars)
                return Token("STRING", f'"{value}"', value, position)
            if ch == "\n":
                raise LexingError("Unterminated string", self._position())
            chars.append(ch)
            self._advance()
        raise LexingError("Unterminated string", self._position())

    def _consume_number(self) -> Token:
        position = self._position()
        start = self.index
        self._consume_digits()
        # Only treat '.' as a radix point when a digit follows it.
        if not self._eof and self._peek() == ".":
            following = self._peek_next()
            if following is not None and following in DIGITS:
                self._advance()
                self._consume_digits()
        lexeme = self.text[start:self.index]
        return Token("NUMBER", lexeme, float(lexeme), position)

    def _consume_digits(self) -> None:
        text = self.text
        n = len(text)
        while self.index < n and text[self.index] in DIGITS:
            self._advance()

    def _consume_identifier(self) -> Token:
        position = self._position()
        start = self.index
        text = self.text
        n = len(text)
        while self.index < n and (text[self.index].isalnum() or text[self.index] == "_"):
            self._advance()
        value = text[start:self.index]
        token_type = KEYWORDS.get(value, "IDENT")
        return Token(token_type, value, LITERALS.get(token_type), position)

    def _token(self, token_type: str, lexeme: str) -> Token:
        return Token(token_type, lexeme, None, self._position())

    def _position(self) -> Position:
        return Position(self.source_path, self.row)

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self) -> str:
        return self.text[self.index]

    def _peek_next(self) -> Optional[str]:
        if self.index + 1 >= len(self.text):
            return None
        return self.text[self.index + 1]

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.row += 1
        self.index += 1

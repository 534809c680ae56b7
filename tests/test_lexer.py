"""
Tests for the func scanner
"""

import pytest

from lexer import Lexer, LexingError, Position


def lex_types(text):
    return [token.type for token in Lexer("<test>", text).lex()]


class TestTokens:
    """Token kinds, lexemes and literals"""

    def test_let_statement(self):
        assert lex_types("let x = 12.5;") == ["LET", "IDENT", "EQUALS", "NUMBER", "SEMICOLON", "EOF"]

    def test_number_literal_is_float(self):
        tokens = Lexer("<test>", "12 3.25").lex()
        assert tokens[0].literal == 12.0
        assert isinstance(tokens[0].literal, float)
        assert tokens[1].literal == 3.25
        assert tokens[1].lexeme == "3.25"

    def test_two_character_operators(self):
        assert lex_types("== != >= <= && ||") == [
            "EQUAL_EQUAL",
            "BANG_EQUAL",
            "GREATER_EQUAL",
            "LESS_EQUAL",
            "AND",
            "OR",
            "EOF",
        ]

    def test_single_character_operators(self):
        assert lex_types("( ) { } [ ] , = + - * / % > < !") == [
            "LPAREN", "RPAREN", "LBRACE", "RBRACE", "LBRACKET", "RBRACKET", "COMMA",
            "EQUALS", "PLUS", "MINUS", "STAR", "SLASH", "PERCENT", "GREATER", "LESS", "BANG",
            "EOF",
        ]

    def test_keywords(self):
        assert lex_types("let func if else true false nil read write push pop return") == [
            "LET", "FUNC", "IF", "ELSE", "TRUE", "FALSE", "NIL",
            "READ", "WRITE", "PUSH", "POP", "RETURN", "EOF",
        ]

    def test_keyword_prefix_is_identifier(self):
        tokens = Lexer("<test>", "letter _tmp2").lex()
        assert [(t.type, t.lexeme) for t in tokens[:-1]] == [("IDENT", "letter"), ("IDENT", "_tmp2")]

    def test_boolean_and_nil_literals(self):
        tokens = Lexer("<test>", "true false nil").lex()
        assert [t.literal for t in tokens[:-1]] == [True, False, None]

    def test_string(self):
        token = Lexer("<test>", '"hi there"').lex()[0]
        assert token.type == "STRING"
        assert token.literal == "hi there"
        assert token.lexeme == '"hi there"'

    def test_empty_source(self):
        assert lex_types("") == ["EOF"]


class TestPositions:
    """Row tracking and comments"""

    def test_comment_skipped(self):
        tokens = Lexer("<test>", "1 // two\n3").lex()
        assert [t.type for t in tokens] == ["NUMBER", "NUMBER", "EOF"]
        assert [t.position.row for t in tokens[:2]] == [1, 2]

    def test_position_carries_path(self):
        token = Lexer("main.func", "\n\nx").lex()[0]
        assert token.position == Position("main.func", 3)

    def test_division_is_not_a_comment(self):
        assert lex_types("4 / 2") == ["NUMBER", "SLASH", "NUMBER", "EOF"]


class TestErrors:
    """Fatal scanning errors"""

    def test_unexpected_character(self):
        with pytest.raises(LexingError) as exc_info:
            Lexer("<test>", "let a = 1\nlet b = @").lex()
        assert exc_info.value.message == "Unexpected character `@`"
        assert exc_info.value.position.row == 2

    def test_trailing_dot_not_consumed(self):
        with pytest.raises(LexingError) as exc_info:
            Lexer("<test>", "3.").lex()
        assert "`.`" in exc_info.value.message

    def test_unterminated_string_at_newline(self):
        with pytest.raises(LexingError) as exc_info:
            Lexer("<test>", 'let s = "abc\nlet y = 1').lex()
        assert exc_info.value.message == "Unterminated string"
        assert exc_info.value.position.row == 1

    def test_unterminated_string_at_eof(self):
        with pytest.raises(LexingError) as exc_info:
            Lexer("<test>", 'write(1)\n"abc').lex()
        assert exc_info.value.position.row == 2

    def test_format_report(self):
        with pytest.raises(LexingError) as exc_info:
            Lexer("prog.func", "#").lex()
        assert exc_info.value.format_report() == "LexingError: Unexpected character `#` in prog.func, line 1."

"""
Tests for the func parser
"""

import pytest

from lexer import Lexer
from parser import (
    ArrayExpression,
    AssignmentStatement,
    BinaryExpression,
    BlockExpression,
    BuiltinStatement,
    CallExpression,
    ExpressionStatement,
    FunctionStatement,
    GroupExpression,
    Identifier,
    IfExpression,
    LetStatement,
    Literal,
    Parser,
    ParsingError,
    ReturnStatement,
    UnaryExpression,
)


def parse(text):
    return Parser(Lexer("<test>", text).lex()).parse()


def parse_expression(text):
    statement = parse(text).statements[0]
    assert isinstance(statement, ExpressionStatement)
    return statement.expression


class TestPrecedence:
    """Operator precedence and associativity"""

    def test_multiplication_binds_tighter(self):
        expr = parse_expression("1 + 2 * 3")
        assert isinstance(expr, BinaryExpression)
        assert expr.operator.type == "PLUS"
        assert isinstance(expr.right, BinaryExpression)
        assert expr.right.operator.type == "STAR"

    def test_left_associative(self):
        expr = parse_expression("1 - 2 - 3")
        assert expr.operator.type == "MINUS"
        assert isinstance(expr.left, BinaryExpression)
        assert expr.left.operator.type == "MINUS"
        assert isinstance(expr.right, Literal)

    def test_and_is_looser_than_or(self):
        expr = parse_expression("a || b && c")
        assert expr.operator.type == "AND"
        assert expr.left.operator.type == "OR"

    def test_comparison_below_arithmetic(self):
        expr = parse_expression("a + 1 >= b * 2")
        assert expr.operator.type == "GREATER_EQUAL"
        assert expr.left.operator.type == "PLUS"
        assert expr.right.operator.type == "STAR"

    def test_unary_takes_single_primary(self):
        expr = parse_expression("-a * b")
        assert expr.operator.type == "STAR"
        assert isinstance(expr.left, UnaryExpression)
        assert isinstance(expr.left.right, Identifier)

    def test_group(self):
        expr = parse_expression("(1 + 2) * 3")
        assert expr.operator.type == "STAR"
        assert isinstance(expr.left, GroupExpression)


class TestStatements:
    """Statement dispatch"""

    def test_let(self):
        statement = parse("let x = 5").statements[0]
        assert isinstance(statement, LetStatement)
        assert statement.name == "x"
        assert statement.expression.token.literal == 5.0

    def test_let_without_initializer_binds_nil(self):
        statement = parse("let x").statements[0]
        assert isinstance(statement.expression, Literal)
        assert statement.expression.token.type == "NIL"

    def test_assignment_needs_single_equals(self):
        assert isinstance(parse("x = 1").statements[0], AssignmentStatement)
        assert isinstance(parse("x == 1").statements[0], ExpressionStatement)

    def test_function_definition(self):
        statement = parse("func add(a, b) { a + b }").statements[0]
        assert isinstance(statement, FunctionStatement)
        assert statement.params == ["a", "b"]
        assert isinstance(statement.body, BlockExpression)

    def test_function_without_params(self):
        assert parse("func f() { 1 }").statements[0].params == []

    def test_return(self):
        assert isinstance(parse("return 1").statements[0], ReturnStatement)

    def test_semicolons_are_optional(self):
        assert len(parse("let a = 1; let b = 2;").statements) == 2
        assert len(parse("let a = 1 let b = 2").statements) == 2

    def test_statement_rows(self):
        program = parse("let a = 1\n\nwrite(a)")
        assert [s.location.row for s in program.statements] == [1, 3]


class TestBuiltins:
    """Builtin argument shapes"""

    def test_write_takes_many(self):
        statement = parse('write("a", 1, x)').statements[0]
        assert isinstance(statement, BuiltinStatement)
        assert statement.kind == "WRITE"
        assert len(statement.args) == 3

    def test_push_shape(self):
        statement = parse("push(1 + 2, items)").statements[0]
        assert statement.kind == "PUSH"
        assert isinstance(statement.args[0], BinaryExpression)
        assert isinstance(statement.args[1], Identifier)

    def test_push_target_must_be_identifier(self):
        with pytest.raises(ParsingError):
            parse("push(1, 2)")

    def test_read_and_pop_take_identifier(self):
        assert parse("read(name)").statements[0].args[0].name == "name"
        assert parse("pop(items)").statements[0].kind == "POP"
        with pytest.raises(ParsingError):
            parse('read("name")')


class TestExpressions:
    """Blocks, ifs, calls and arrays"""

    def test_if_as_value(self):
        statement = parse("let x = if c { 1 } else { 2 }").statements[0]
        assert isinstance(statement.expression, IfExpression)
        assert isinstance(statement.expression.else_block, BlockExpression)

    def test_else_if_chain(self):
        expr = parse_expression("if a { 1 } else if b { 2 } else { 3 }")
        assert isinstance(expr.else_block, IfExpression)
        assert isinstance(expr.else_block.else_block, BlockExpression)

    def test_if_without_else(self):
        assert parse_expression("if a { 1 }").else_block is None

    def test_bare_block(self):
        expr = parse_expression("{ let a = 1 a }")
        assert isinstance(expr, BlockExpression)
        assert len(expr.statements) == 2

    def test_call(self):
        expr = parse_expression("f(1, g(2))")
        assert isinstance(expr, CallExpression)
        assert expr.name == "f"
        assert isinstance(expr.args[1], CallExpression)

    def test_array_literal(self):
        expr = parse_expression('[1, "two", true, nil]')
        assert isinstance(expr, ArrayExpression)
        assert [t.type for t in expr.items] == ["NUMBER", "STRING", "TRUE", "NIL"]

    def test_empty_array(self):
        assert parse_expression("[]").items == []

    def test_array_rejects_expressions(self):
        with pytest.raises(ParsingError) as exc_info:
            parse("[1, x]")
        assert "`x`" in exc_info.value.message


class TestErrors:
    """Parse failures carry positions"""

    def test_missing_identifier(self):
        with pytest.raises(ParsingError) as exc_info:
            parse("let = 1")
        assert exc_info.value.message == "Expected IDENT but found `=`"

    def test_unclosed_block(self):
        with pytest.raises(ParsingError) as exc_info:
            parse("func f() {\n  1")
        assert "end of file" in exc_info.value.message
        assert exc_info.value.position.row == 2

    def test_unexpected_token(self):
        with pytest.raises(ParsingError) as exc_info:
            parse("let a = 1\nlet b = )")
        assert exc_info.value.message == "Unexpected token `)`"
        assert exc_info.value.format_report() == "ParsingError: Unexpected token `)` in <test>, line 2."

    def test_deep_nesting_is_a_parse_error(self):
        source = "(" * 5000 + "1" + ")" * 5000
        with pytest.raises(ParsingError) as exc_info:
            parse(source)
        assert exc_info.value.message == "Expression nested too deeply"
        assert exc_info.value.format_report().startswith("ParsingError: Expression nested too deeply in <test>")

    def test_moderate_nesting_parses(self):
        statement = parse("(" * 50 + "1" + ")" * 50).statements[0]
        assert isinstance(statement.expression, GroupExpression)

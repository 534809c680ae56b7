from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

from lexer import FuncError, Position, Token


class ParsingError(FuncError):
    """Raised when parsing fails."""

    kind = "ParsingError"


@dataclass
class Node:
    location: Position


class Statement(Node):
    pass


class Expression(Node):
    pass


@dataclass
class Program(Node):
    statements: List[Statement]


@dataclass
class BlockExpression(Expression):
    statements: List[Statement]


@dataclass
class IfExpression(Expression):
    condition: Expression
    if_block: BlockExpression
    else_block: Optional[Union["IfExpression", BlockExpression]]


@dataclass
class BinaryExpression(Expression):
    left: Expression
    operator: Token
    right: Expression


@dataclass
class UnaryExpression(Expression):
    operator: Token
    right: Expression


@dataclass
class GroupExpression(Expression):
    inner: Expression


@dataclass
class CallExpression(Expression):
    name: str
    args: List[Expression]


@dataclass
class Identifier(Expression):
    name: str


@dataclass
class Literal(Expression):
    token: Token


@dataclass
class ArrayExpression(Expression):
    items: List[Token]


@dataclass
class LetStatement(Statement):
    name: str
    expression: Expression


@dataclass
class AssignmentStatement(Statement):
    name: str
    expression: Expression


@dataclass
class FunctionStatement(Statement):
    name: str
    params: List[str]
    body: BlockExpression


@dataclass
class BuiltinStatement(Statement):
    kind: str
    args: List[Expression]


@dataclass
class ReturnStatement(Statement):
    expression: Expression


@dataclass
class ExpressionStatement(Statement):
    expression: Expression


BUILTIN_KEYWORDS = ("READ", "WRITE", "PUSH", "POP")
LITERAL_TOKENS = ("NUMBER", "STRING", "TRUE", "FALSE", "NIL")

# Binary precedence levels, lowest first. Each level folds the next one.
BINARY_LEVELS = (
    ("AND",),
    ("OR",),
    ("EQUAL_EQUAL", "BANG_EQUAL"),
    ("GREATER", "GREATER_EQUAL", "LESS", "LESS_EQUAL"),
    ("PLUS", "MINUS"),
    ("STAR", "SLASH", "PERCENT"),
)


class Parser:
    def __init__(self, tokens: List[Token]) -> None:
        self.tokens = tokens
        self.index = 0

    def parse(self) -> Program:
        try:
            statements: List[Statement] = self._parse_statements(stop_tokens={"EOF"})
        except RecursionError:
            raise ParsingError("Expression nested too deeply", self._peek().position) from None
        eof_token: Token = self._peek()
        start = self.tokens[0].position if self.tokens else eof_token.position
        return Program(location=start, statements=statements)

    def _parse_statements(self, stop_tokens: Iterable[str]) -> List[Statement]:
        statements: List[Statement] = []
        while self._peek().type not in stop_tokens:
            if self._match("SEMICOLON"):
                continue
            if self._peek().type == "EOF":
                break
            statements.append(self._parse_statement())
        return statements

    def _parse_statement(self) -> Statement:
        token = self._peek()
        if token.type == "FUNC":
            return self._parse_func()
        if token.type == "LET":
            return self._parse_let()
        if token.type == "RETURN":
            return self._parse_return()
        if token.type in BUILTIN_KEYWORDS:
            return self._parse_builtin()
        if token.type == "IDENT" and self._peek_next().type == "EQUALS":
            return self._parse_assignment()
        expr: Expression = self._parse_expression()
        return ExpressionStatement(location=expr.location, expression=expr)

    def _parse_func(self) -> FunctionStatement:
        keyword = self._consume("FUNC")
        name_token = self._consume("IDENT")
        self._consume("LPAREN")
        params: List[str] = []
        if self._peek().type != "RPAREN":
            while True:
                param = self._consume("IDENT")
                params.append(param.lexeme)
                if not self._match("COMMA"):
                    break
        self._consume("RPAREN")
        body = self._parse_block()
        return FunctionStatement(location=keyword.position, name=name_token.lexeme, params=params, body=body)

    def _parse_let(self) -> LetStatement:
        self._consume("LET")
        ident = self._consume("IDENT")
        if self._match("EQUALS"):
            expr = self._parse_expression()
        else:
            nil_token = Token("NIL", "nil", None, ident.position)
            expr = Literal(location=ident.position, token=nil_token)
        return LetStatement(location=ident.position, name=ident.lexeme, expression=expr)

    def _parse_assignment(self) -> AssignmentStatement:
        ident = self._consume("IDENT")
        self._consume("EQUALS")
        expr = self._parse_expression()
        return AssignmentStatement(location=ident.position, name=ident.lexeme, expression=expr)

    def _parse_return(self) -> ReturnStatement:
        keyword = self._consume("RETURN")
        expression = self._parse_expression()
        return ReturnStatement(location=keyword.position, expression=expression)

    def _parse_builtin(self) -> BuiltinStatement:
        keyword = self._advance()
        self._consume("LPAREN")
        args: List[Expression]
        if keyword.type in ("READ", "POP"):
            args = [self._parse_identifier()]
        elif keyword.type == "PUSH":
            value = self._parse_expression()
            self._consume("COMMA")
            args = [value, self._parse_identifier()]
        else:
            args = [self._parse_expression()]
            while self._match("COMMA"):
                args.append(self._parse_expression())
        self._consume("RPAREN")
        return BuiltinStatement(location=keyword.position, kind=keyword.type, args=args)

    def _parse_identifier(self) -> Identifier:
        ident = self._consume("IDENT")
        return Identifier(location=ident.position, name=ident.lexeme)

    def _parse_block(self) -> BlockExpression:
        start = self._consume("LBRACE")
        statements: List[Statement] = self._parse_statements(stop_tokens={"RBRACE"})
        self._consume("RBRACE")
        return BlockExpression(location=start.position, statements=statements)

    def _parse_if(self) -> IfExpression:
        keyword = self._consume("IF")
        condition: Expression = self._parse_expression()
        if_block = self._parse_block()
        else_block: Optional[Union[IfExpression, BlockExpression]] = None
        if self._match("ELSE"):
            if self._peek().type == "IF":
                else_block = self._parse_if()
            else:
                else_block = self._parse_block()
        return IfExpression(location=keyword.position, condition=condition, if_block=if_block, else_block=else_block)

    def _parse_expression(self) -> Expression:
        token = self._peek()
        if token.type == "LBRACE":
            return self._parse_block()
        if token.type == "IF":
            return self._parse_if()
        return self._parse_binary(0)

    def _parse_binary(self, level: int) -> Expression:
        if level == len(BINARY_LEVELS):
            return self._parse_unary()
        operators = BINARY_LEVELS[level]
        left = self._parse_binary(level + 1)
        while self._peek().type in operators:
            operator = self._advance()
            right = self._parse_binary(level + 1)
            left = BinaryExpression(location=operator.position, left=left, operator=operator, right=right)
        return left

    def _parse_unary(self) -> Expression:
        token = self._peek()
        if token.type in ("MINUS", "BANG"):
            operator = self._advance()
            right = self._parse_primary()
            return UnaryExpression(location=operator.position, operator=operator, right=right)
        return self._parse_primary()

    def _parse_primary(self) -> Expression:
        token = self._peek()
        if token.type in LITERAL_TOKENS:
            self._advance()
            return Literal(location=token.position, token=token)
        if token.type == "IDENT":
            ident: Token = self._advance()
            if self._match("LPAREN"):
                args: List[Expression] = []
                if self._peek().type != "RPAREN":
                    while True:
                        args.append(self._parse_expression())
                        if not self._match("COMMA"):
                            break
                self._consume("RPAREN")
                return CallExpression(location=ident.position, name=ident.lexeme, args=args)
            return Identifier(location=ident.position, name=ident.lexeme)
        if token.type == "LBRACKET":
            return self._parse_array_literal()
        if token.type == "LPAREN":
            self._consume("LPAREN")
            inner: Expression = self._parse_expression()
            self._consume("RPAREN")
            return GroupExpression(location=token.position, inner=inner)
        if token.type == "LBRACE":
            return self._parse_block()
        if token.type == "IF":
            return self._parse_if()
        raise ParsingError(f"Unexpected token `{self._describe(token)}`", token.position)

    def _parse_array_literal(self) -> ArrayExpression:
        lbracket = self._consume("LBRACKET")
        items: List[Token] = []
        if self._peek().type != "RBRACKET":
            while True:
                item = self._peek()
                if item.type not in LITERAL_TOKENS:
                    raise ParsingError(
                        f"Array literals only accept literal values, found `{self._describe(item)}`", item.position
                    )
                items.append(self._advance())
                if not self._match("COMMA"):
                    break
        self._consume("RBRACKET")
        return ArrayExpression(location=lbracket.position, items=items)

    def _consume(self, token_type: str) -> Token:
        token = self._peek()
        if token.type != token_type:
            raise ParsingError(f"Expected {token_type} but found `{self._describe(token)}`", token.position)
        self.index += 1
        return token

    def _match(self, token_type: str) -> bool:
        if self._peek().type == token_type:
            self.index += 1
            return True
        return False

    def _advance(self) -> Token:
        token = self._peek()
        if token.type != "EOF":
            self.index += 1
        return token

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _peek_next(self) -> Token:
        if self.index + 1 >= len(self.tokens):
            return self.tokens[-1]
        return self.tokens[self.index + 1]

    @staticmethod
    def _describe(token: Token) -> str:
        return "end of file" if token.type == "EOF" else token.lexeme

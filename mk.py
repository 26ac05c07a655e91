#!/usr/bin/env python3

from abc import ABC, abstractmethod
from argparse import ArgumentParser
from dataclasses import dataclass, field
from pathlib import Path
from string import digits, printable, whitespace
from types import ModuleType
from typing import (
    Callable,
    Iterable,
    Iterator,
    Optional,
    Tuple,
    Type,
    Union,
    final,
)
import code
import enum
import os
import re
import sys

import re2

readline: Optional[ModuleType]
try:
    # REPL readline support.
    import readline
except ImportError:
    readline = None

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1
# Python frames available while evaluating; each mk call uses several.
RECURSION_LIMIT = 10000


def escape(text: str) -> str:
    MAPPING = {
        "\t": "\\t",
        "\n": "\\n",
        '"': '\\"',
        "\\": "\\\\",
    }
    return "".join([MAPPING.get(c, c) for c in text])


def quote(item: object) -> str:
    text = str(item)
    return f"`{text}`" if "`" not in text else f'"{text}"'


def wrap_int64(value: int) -> int:
    return (value - INT64_MIN) % 2**64 + INT64_MIN


@dataclass
class SourceLocation:
    filename: Optional[str]
    line: int

    def __str__(self):
        if self.filename is None:
            return f"line {self.line}"
        return f"{self.filename}, line {self.line}"


class Value(ABC):
    @staticmethod
    @abstractmethod
    def typename() -> str:
        raise NotImplementedError()

    @abstractmethod
    def __hash__(self):
        raise NotImplementedError()

    @abstractmethod
    def __eq__(self, other):
        raise NotImplementedError()

    @abstractmethod
    def __str__(self):
        raise NotImplementedError()


@final
class Null(Value):
    @staticmethod
    def typename() -> str:
        return "null"

    @staticmethod
    def new() -> "Null":
        return NULL

    def __hash__(self):
        return 0

    def __eq__(self, other):
        return self is other

    def __repr__(self):
        return "Null()"

    def __str__(self):
        return "null"


@final
@dataclass
class Boolean(Value):
    data: bool

    @staticmethod
    def typename() -> str:
        return "boolean"

    @staticmethod
    def new(data: bool) -> "Boolean":
        return TRUE if data else FALSE

    def __hash__(self):
        return hash(self.data)

    def __eq__(self, other):
        # Only the TRUE and FALSE singletons are ever created.
        return self is other

    def __str__(self):
        return "true" if self.data else "false"


@final
@dataclass
class Integer(Value):
    data: int

    @staticmethod
    def typename() -> str:
        return "integer"

    @staticmethod
    def new(data: int) -> "Integer":
        return Integer(wrap_int64(data))

    def __hash__(self):
        return hash(self.data)

    def __eq__(self, other):
        if type(self) is not type(other):
            return False
        return self.data == other.data

    def __str__(self):
        return str(self.data)


@final
@dataclass
class String(Value):
    data: str

    @staticmethod
    def typename() -> str:
        return "string"

    def __hash__(self):
        return hash(self.data)

    def __eq__(self, other):
        if type(self) is not type(other):
            return False
        return self.data == other.data

    def __str__(self):
        return self.data


@final
@dataclass
class Array(Value):
    elements: list[Value]

    @staticmethod
    def typename() -> str:
        return "array"

    def __hash__(self):
        return hash(str(self))

    def __eq__(self, other):
        if type(self) is not type(other):
            return False
        return self.elements == other.elements

    def __str__(self):
        return "[" + ", ".join(str(x) for x in self.elements) + "]"


@final
@dataclass
class Function(Value):
    ast: "AstExpressionFunction"
    env: "Environment"

    @staticmethod
    def typename() -> str:
        return "function"

    def __hash__(self):
        return hash(id(self.ast)) + hash(id(self.env))

    def __eq__(self, other):
        if type(self) is not type(other):
            return False
        return self.ast is other.ast and self.env is other.env

    def __repr__(self):
        return f"Function({self})"

    def __str__(self):
        parameters = ", ".join(p.name for p in self.ast.parameters)
        if self.ast.name is not None:
            text = f"fn {self.ast.name}({parameters})"
        else:
            text = f"fn({parameters})"
        if self.ast.location is not None:
            return f"{text}@[{self.ast.location}]"
        return text


class InvalidArguments(Exception):
    pass


class Builtin(Value):
    @property
    @abstractmethod
    def name(self) -> str:
        """
        Name associated with the builtin.
        Builtin subclasses should add the builtin name as a class property.
        """
        raise NotImplementedError()

    @staticmethod
    def typename() -> str:
        return "function"

    def __hash__(self):
        return hash(type(self))

    def __eq__(self, other):
        return type(self) is type(other)

    def __repr__(self):
        return f"Builtin({self.name})"

    def __str__(self):
        return f"{self.name}@builtin"

    def call(self, arguments: list[Value]) -> Union[Value, "Error"]:
        try:
            result = self.function(arguments)
        except InvalidArguments as e:
            return Error(None, f"invalid arguments to {self.name}: {e}")
        except Exception as e:
            message = f"{e}"
            if len(message) == 0:
                message = f"encountered exception {type(e).__name__}"
            return Error(None, message)
        # A builtin without a meaningful result returns None.
        return NULL if result is None else result

    @staticmethod
    def expect_argument_count(arguments: list[Value], count: int) -> None:
        if len(arguments) != count:
            raise InvalidArguments(
                f"invalid argument count (expected {count}, received {len(arguments)})"
            )

    @staticmethod
    def typed_argument(
        arguments: list[Value],
        index: int,
        ty: Union[Type[Value], Tuple[Type[Value], ...]],
    ) -> Value:
        argument = arguments[index]
        if not isinstance(argument, ty):
            types = ty if isinstance(ty, tuple) else (ty,)
            expected = " or ".join(t.typename() for t in types)
            raise InvalidArguments(
                f"expected {expected} value for argument {index}, received {argument.typename()}"
            )
        return argument

    @abstractmethod
    def function(self, arguments: list[Value]) -> Optional[Union[Value, "Error"]]:
        raise NotImplementedError()


NULL = Null()
TRUE = Boolean(True)
FALSE = Boolean(False)


class TokenKind(enum.Enum):
    # Meta
    ILLEGAL = "illegal"
    EOF = "eof"
    # Identifiers and Literals
    IDENTIFIER = "identifier"
    INTEGER = "integer"
    STRING = "string"
    # Operators
    ADD = "+"
    SUB = "-"
    MUL = "*"
    DIV = "/"
    EQ = "=="
    NE = "!="
    LT = "<"
    GT = ">"
    NOT = "!"
    DOT = "."
    ASSIGN = "="
    # Delimiters
    COMMA = ","
    SEMICOLON = ";"
    LPAREN = "("
    RPAREN = ")"
    LBRACE = "{"
    RBRACE = "}"
    LBRACKET = "["
    RBRACKET = "]"
    # Keywords
    FUNCTION = "fn"
    LET = "let"
    USE = "use"
    WHILE = "while"
    TRUE = "true"
    FALSE = "false"
    IF = "if"
    ELSE = "else"
    RETURN = "return"

    def __str__(self):
        return self.value


@dataclass
class Token:
    KEYWORDS = {
        # fmt: off
        str(TokenKind.FUNCTION): TokenKind.FUNCTION,
        str(TokenKind.LET):      TokenKind.LET,
        str(TokenKind.USE):      TokenKind.USE,
        str(TokenKind.WHILE):    TokenKind.WHILE,
        str(TokenKind.TRUE):     TokenKind.TRUE,
        str(TokenKind.FALSE):    TokenKind.FALSE,
        str(TokenKind.IF):       TokenKind.IF,
        str(TokenKind.ELSE):     TokenKind.ELSE,
        str(TokenKind.RETURN):   TokenKind.RETURN,
        # fmt: on
    }

    kind: TokenKind
    literal: str
    location: Optional[SourceLocation] = None
    string: Optional[str] = None

    def __str__(self):
        if self.kind == TokenKind.EOF:
            return "end-of-file"
        if self.kind == TokenKind.ILLEGAL:

            def prettyable(c):
                return c in printable and c not in whitespace

            def prettyrepr(c):
                return c if prettyable(c) else f"{ord(c):#04x}"

            return "".join(map(prettyrepr, self.literal))
        return self.literal

    @staticmethod
    def lookup_identifier(identifier: str) -> TokenKind:
        return Token.KEYWORDS.get(identifier, TokenKind.IDENTIFIER)


@dataclass
class ParseError(Exception):
    location: Optional[SourceLocation]
    why: str

    def __str__(self):
        if self.location is None:
            return f"{self.why}"
        return f"[{self.location}] {self.why}"


class Lexer:
    EOF_LITERAL = ""
    WHITESPACE = " \t\r\n"
    RE_IDENTIFIER = re.compile(r"[^\W\d]\w*")
    RE_INTEGER = re.compile(r"\d+", re.ASCII)
    ESCAPES = {"n": "\n", "t": "\t", '"': '"', "\\": "\\"}
    SIMPLE_TOKENS = {
        str(kind): kind
        for kind in (
            TokenKind.ADD,
            TokenKind.SUB,
            TokenKind.MUL,
            TokenKind.DIV,
            TokenKind.LT,
            TokenKind.GT,
            TokenKind.NOT,
            TokenKind.DOT,
            TokenKind.ASSIGN,
            TokenKind.COMMA,
            TokenKind.SEMICOLON,
            TokenKind.LPAREN,
            TokenKind.RPAREN,
            TokenKind.LBRACE,
            TokenKind.RBRACE,
            TokenKind.LBRACKET,
            TokenKind.RBRACKET,
        )
    }

    def __init__(
        self,
        source: str,
        location: Optional[SourceLocation] = None,
        lines: Optional[Iterable[str]] = None,
    ):
        self.source: str = source
        # What position does the source "start" being parsed from.
        # None if the source is being lexed in a location-independent manner.
        self.location: Optional[SourceLocation] = location
        self.position: int = 0
        # Consulted for one more line whenever the buffer runs out.
        self.lines: Optional[Iterator[str]] = iter(lines) if lines is not None else None
        # Positions of the spaces joining appended lines.
        self.separators: set[int] = set()
        self.errors: list[ParseError] = list()

    @staticmethod
    def _is_letter(ch: str) -> bool:
        return Lexer.RE_IDENTIFIER.match(ch) is not None

    def append(self, line: str) -> None:
        line = line.rstrip("\r\n")
        if len(self.source) == 0:
            if len(line) == 0:
                # Nothing is buffered, so the skipped line only moves the
                # location of the first token.
                if self.location is not None:
                    self.location.line += 1
                return
            self.source = line
            return
        self.separators.add(len(self.source))
        self.source += " " + line

    def _fill(self) -> None:
        while self.position >= len(self.source) and self.lines is not None:
            line = next(self.lines, None)
            if line is None:
                self.lines = None
                return
            self.append(line)

    def _is_eof(self) -> bool:
        self._fill()
        return self.position >= len(self.source)

    def _current_character(self) -> str:
        if self._is_eof():
            return Lexer.EOF_LITERAL
        return self.source[self.position]

    def _peek_character(self) -> str:
        if self.position + 1 >= len(self.source):
            return Lexer.EOF_LITERAL
        return self.source[self.position + 1]

    def _advance_character(self) -> None:
        if self._is_eof():
            return
        if self.location is not None and (
            self.source[self.position] == "\n" or self.position in self.separators
        ):
            self.location.line += 1
        self.position += 1

    def _current_location(self) -> Optional[SourceLocation]:
        if self.location is None:
            return None
        return SourceLocation(self.location.filename, self.location.line)

    def _skip_whitespace(self) -> None:
        while not self._is_eof() and self._current_character() in Lexer.WHITESPACE:
            self._advance_character()

    def _lex_keyword_or_identifier(self, location: Optional[SourceLocation]) -> Token:
        match = Lexer.RE_IDENTIFIER.match(self.source, self.position)
        assert match is not None  # guaranteed by _is_letter
        text = match[0]
        self.position += len(text)
        return Token(Token.lookup_identifier(text), text, location)

    def _lex_integer(self, location: Optional[SourceLocation]) -> Token:
        match = Lexer.RE_INTEGER.match(self.source, self.position)
        assert match is not None  # guaranteed by the digit check
        text = match[0]
        self.position += len(text)
        return Token(TokenKind.INTEGER, text, location)

    def _lex_string(self, location: Optional[SourceLocation]) -> Token:
        start = self.position
        self._advance_character()
        characters: list[str] = list()
        while True:
            if self._is_eof():
                self.errors.append(ParseError(location, "unterminated string literal"))
                break
            current = self._current_character()
            if current == '"':
                self._advance_character()
                break
            if current == "\\" and self._peek_character() in Lexer.ESCAPES:
                characters.append(Lexer.ESCAPES[self._peek_character()])
                self._advance_character()
                self._advance_character()
                continue
            characters.append(current)
            self._advance_character()
        literal = self.source[start : self.position]
        return Token(TokenKind.STRING, literal, location, string="".join(characters))

    def next_token(self) -> Token:
        self._skip_whitespace()
        location = self._current_location()

        if self._is_eof():
            return Token(TokenKind.EOF, Lexer.EOF_LITERAL, location)

        current = self._current_character()
        if current == '"':
            return self._lex_string(location)
        if Lexer._is_letter(current):
            return self._lex_keyword_or_identifier(location)
        if current in digits:
            return self._lex_integer(location)

        if current == "=" and self._peek_character() == "=":
            self._advance_character()
            self._advance_character()
            return Token(TokenKind.EQ, str(TokenKind.EQ), location)
        if current == "!" and self._peek_character() == "=":
            self._advance_character()
            self._advance_character()
            return Token(TokenKind.NE, str(TokenKind.NE), location)

        self._advance_character()
        kind = Lexer.SIMPLE_TOKENS.get(current)
        if kind is None:
            return Token(TokenKind.ILLEGAL, current, location)
        return Token(kind, str(kind), location)


@dataclass
class Return:
    value: Value


@dataclass
class Error:
    @dataclass
    class TraceElement:
        location: Optional[SourceLocation]
        function: Union[Function, Builtin]

    location: Optional[SourceLocation]
    message: str
    trace: list[TraceElement]

    def __init__(self, location: Optional[SourceLocation], message: str):
        self.location = location
        self.message = message
        self.trace = list()

    def __str__(self):
        return self.message

    def describe(self) -> str:
        if self.location is None:
            return f"error: {self}"
        return f"[{self.location}] error: {self}"


ControlFlow = Union[Return, Error]
Result = Union[Value, ControlFlow]


class Environment:
    @dataclass
    class Lookup:
        value: Value
        store: dict[str, Value]

    def __init__(self, outer: Optional["Environment"] = None):
        self.outer: Optional["Environment"] = outer
        self.store: dict[str, Value] = dict()

    def let(self, name: str, value: Value) -> None:
        self.store[name] = value

    def declared(self, name: str) -> bool:
        return name in self.store

    def get(self, name: str) -> Optional[Value]:
        value = self.store.get(name, None)
        if value is None and self.outer is not None:
            return self.outer.get(name)
        return value

    def lookup(self, name: str) -> Optional[Lookup]:
        value = self.store.get(name, None)
        if value is None and self.outer is not None:
            return self.outer.lookup(name)
        if value is None:
            return None
        return Environment.Lookup(value, self.store)


class AstNode(ABC):
    location: Optional[SourceLocation]


class AstExpression(AstNode):
    location: Optional[SourceLocation]


class AstStatement(AstNode):
    location: Optional[SourceLocation]


@final
@dataclass(frozen=True)
class AstProgram(AstNode):
    location: Optional[SourceLocation] = field(compare=False)
    statements: tuple[AstStatement, ...]

    def __str__(self):
        return " ".join(str(x) for x in self.statements)


@final
@dataclass(frozen=True)
class AstIdentifier(AstNode):
    """
    Identifier with no additional behavior attached, e.g. a parameter or the
    target of a let statement.
    """

    location: Optional[SourceLocation] = field(compare=False)
    name: str

    def __str__(self):
        return self.name


@final
@dataclass(frozen=True)
class AstExpressionIdentifier(AstExpression):
    """
    Identifier evaluated as an expression to produce a value.
    """

    location: Optional[SourceLocation] = field(compare=False)
    name: str

    def __str__(self):
        return self.name


@final
@dataclass(frozen=True)
class AstExpressionInteger(AstExpression):
    location: Optional[SourceLocation] = field(compare=False)
    value: int

    def __str__(self):
        return str(self.value)


@final
@dataclass(frozen=True)
class AstExpressionString(AstExpression):
    location: Optional[SourceLocation] = field(compare=False)
    value: str

    def __str__(self):
        return f'"{escape(self.value)}"'


@final
@dataclass(frozen=True)
class AstExpressionBoolean(AstExpression):
    location: Optional[SourceLocation] = field(compare=False)
    value: bool

    def __str__(self):
        return "true" if self.value else "false"


@final
@dataclass(frozen=True)
class AstExpressionArray(AstExpression):
    location: Optional[SourceLocation] = field(compare=False)
    elements: tuple[AstExpression, ...]

    def __str__(self):
        return "[" + ", ".join(str(x) for x in self.elements) + "]"


@final
@dataclass(frozen=True)
class AstExpressionPrefix(AstExpression):
    location: Optional[SourceLocation] = field(compare=False)
    operator: str
    operand: AstExpression

    def __str__(self):
        return f"({self.operator}{self.operand})"


@final
@dataclass(frozen=True)
class AstExpressionInfix(AstExpression):
    location: Optional[SourceLocation] = field(compare=False)
    operator: str
    lhs: AstExpression
    rhs: AstExpression

    def __str__(self):
        return f"({self.lhs} {self.operator} {self.rhs})"


@final
@dataclass(frozen=True)
class AstBlock(AstNode):
    location: Optional[SourceLocation] = field(compare=False)
    statements: tuple[AstStatement, ...]

    def __str__(self):
        if len(self.statements) == 0:
            return "{ }"
        return "{ " + " ".join(str(x) for x in self.statements) + " }"


@final
@dataclass(frozen=True)
class AstExpressionIf(AstExpression):
    location: Optional[SourceLocation] = field(compare=False)
    condition: AstExpression
    consequence: AstBlock
    alternative: Optional[AstBlock] = None

    def __str__(self):
        text = f"if ({self.condition}) {self.consequence}"
        if self.alternative is not None:
            text += f" else {self.alternative}"
        return text


@final
@dataclass(frozen=True)
class AstExpressionFunction(AstExpression):
    location: Optional[SourceLocation] = field(compare=False)
    parameters: tuple[AstIdentifier, ...]
    body: AstBlock
    name: Optional[str] = None

    def __str__(self):
        parameters = ", ".join(str(x) for x in self.parameters)
        if self.name is not None:
            return f"fn {self.name}({parameters}) {self.body}"
        return f"fn({parameters}) {self.body}"


@final
@dataclass(frozen=True)
class AstExpressionCall(AstExpression):
    location: Optional[SourceLocation] = field(compare=False)
    function: AstExpression
    arguments: tuple[AstExpression, ...]
    # Name of the module the callee is resolved in, for qualified calls.
    module: Optional[str] = None

    def __str__(self):
        arguments = ", ".join(str(x) for x in self.arguments)
        return f"{self.function}({arguments})"


@final
@dataclass(frozen=True)
class AstExpressionIndex(AstExpression):
    location: Optional[SourceLocation] = field(compare=False)
    array: AstExpression
    index: AstExpression

    def __str__(self):
        return f"({self.array}[{self.index}])"


@final
@dataclass(frozen=True)
class AstExpressionExternal(AstExpression):
    location: Optional[SourceLocation] = field(compare=False)
    module: str
    reference: Union[AstExpressionIdentifier, AstExpressionCall]

    def __str__(self):
        return f"{self.module}.{self.reference}"


@final
@dataclass(frozen=True)
class AstStatementLet(AstStatement):
    location: Optional[SourceLocation] = field(compare=False)
    identifier: AstIdentifier
    expression: AstExpression

    def __str__(self):
        return f"let {self.identifier} = {self.expression};"


@final
@dataclass(frozen=True)
class AstStatementReassignment(AstStatement):
    location: Optional[SourceLocation] = field(compare=False)
    identifier: AstIdentifier
    expression: AstExpression

    def __str__(self):
        return f"{self.identifier} = {self.expression};"


@final
@dataclass(frozen=True)
class AstStatementReturn(AstStatement):
    location: Optional[SourceLocation] = field(compare=False)
    expression: Optional[AstExpression]

    def __str__(self):
        if self.expression is None:
            return "return;"
        return f"return {self.expression};"


@final
@dataclass(frozen=True)
class AstStatementUse(AstStatement):
    location: Optional[SourceLocation] = field(compare=False)
    module: str

    def __str__(self):
        return f"use {self.module};"


@final
@dataclass(frozen=True)
class AstStatementWhile(AstStatement):
    location: Optional[SourceLocation] = field(compare=False)
    condition: AstExpression
    body: AstBlock

    def __str__(self):
        return f"while ({self.condition}) {self.body}"


@final
@dataclass(frozen=True)
class AstStatementExpression(AstStatement):
    location: Optional[SourceLocation] = field(compare=False)
    expression: AstExpression

    def __str__(self):
        return f"{self.expression}"


class Precedence(enum.IntEnum):
    # fmt: off
    LOWEST      = enum.auto()
    EQUALS      = enum.auto()  # == !=
    LESSGREATER = enum.auto()  # < >
    SUM         = enum.auto()  # + -
    PRODUCT     = enum.auto()  # * /
    PREFIX      = enum.auto()  # -x !x
    INDEX       = enum.auto()  # array[x]
    CALL        = enum.auto()  # function(x)
    EXTERNAL    = enum.auto()  # module.x
    # fmt: on


class Parser:
    ParseNud = Callable[["Parser"], AstExpression]
    ParseLed = Callable[["Parser", AstExpression], AstExpression]

    PRECEDENCES: dict[TokenKind, Precedence] = {
        # fmt: off
        TokenKind.EQ:       Precedence.EQUALS,
        TokenKind.NE:       Precedence.EQUALS,
        TokenKind.LT:       Precedence.LESSGREATER,
        TokenKind.GT:       Precedence.LESSGREATER,
        TokenKind.ADD:      Precedence.SUM,
        TokenKind.SUB:      Precedence.SUM,
        TokenKind.MUL:      Precedence.PRODUCT,
        TokenKind.DIV:      Precedence.PRODUCT,
        TokenKind.LBRACKET: Precedence.INDEX,
        TokenKind.LPAREN:   Precedence.CALL,
        TokenKind.DOT:      Precedence.EXTERNAL,
        # fmt: on
    }

    def __init__(self, lexer: Lexer):
        self.lexer: Lexer = lexer
        self.diagnostics: list[ParseError] = list()
        self.current_token: Token = Token(TokenKind.ILLEGAL, "DEFAULT CURRENT TOKEN")
        self.peek_token: Token = Token(TokenKind.ILLEGAL, "DEFAULT PEEK TOKEN")

        self._advance_token()
        self._advance_token()

        self.parse_nud_functions: dict[TokenKind, Parser.ParseNud] = dict()
        self.parse_led_functions: dict[TokenKind, Parser.ParseLed] = dict()

        self._register_nud(TokenKind.IDENTIFIER, Parser.parse_expression_identifier)
        self._register_nud(TokenKind.INTEGER, Parser.parse_expression_integer)
        self._register_nud(TokenKind.STRING, Parser.parse_expression_string)
        self._register_nud(TokenKind.TRUE, Parser.parse_expression_boolean)
        self._register_nud(TokenKind.FALSE, Parser.parse_expression_boolean)
        self._register_nud(TokenKind.NOT, Parser.parse_expression_prefix)
        self._register_nud(TokenKind.SUB, Parser.parse_expression_prefix)
        self._register_nud(TokenKind.LPAREN, Parser.parse_expression_grouped)
        self._register_nud(TokenKind.LBRACKET, Parser.parse_expression_array)
        self._register_nud(TokenKind.IF, Parser.parse_expression_if)
        self._register_nud(TokenKind.FUNCTION, Parser.parse_expression_function)

        self._register_led(TokenKind.ADD, Parser.parse_expression_infix)
        self._register_led(TokenKind.SUB, Parser.parse_expression_infix)
        self._register_led(TokenKind.MUL, Parser.parse_expression_infix)
        self._register_led(TokenKind.DIV, Parser.parse_expression_infix)
        self._register_led(TokenKind.EQ, Parser.parse_expression_infix)
        self._register_led(TokenKind.NE, Parser.parse_expression_infix)
        self._register_led(TokenKind.LT, Parser.parse_expression_infix)
        self._register_led(TokenKind.GT, Parser.parse_expression_infix)
        self._register_led(TokenKind.LPAREN, Parser.parse_expression_call)
        self._register_led(TokenKind.LBRACKET, Parser.parse_expression_index)
        self._register_led(TokenKind.DOT, Parser.parse_expression_external)

    @property
    def errors(self) -> list[str]:
        return [str(x) for x in self.diagnostics]

    def _register_nud(self, kind: TokenKind, parse: "Parser.ParseNud") -> None:
        self.parse_nud_functions[kind] = parse

    def _register_led(self, kind: TokenKind, parse: "Parser.ParseLed") -> None:
        self.parse_led_functions[kind] = parse

    def _advance_token(self) -> Token:
        current_token = self.current_token
        self.current_token = self.peek_token
        self.peek_token = self.lexer.next_token()
        self.diagnostics.extend(self.lexer.errors)
        self.lexer.errors.clear()
        return current_token

    def _check_current(self, kind: TokenKind) -> bool:
        return self.current_token.kind == kind

    def _check_peek(self, kind: TokenKind) -> bool:
        return self.peek_token.kind == kind

    def _expect_current(self, kind: TokenKind) -> Token:
        current = self.current_token
        if current.kind != kind:
            raise ParseError(
                current.location, f"expected {quote(kind)}, found {quote(current)}"
            )
        self._advance_token()
        return current

    def _skip_semicolon(self) -> None:
        if self._check_current(TokenKind.SEMICOLON):
            self._advance_token()

    def _synchronize(self) -> None:
        # Skip the rest of a broken statement: through the next `;`, or up to
        # the `}` closing the enclosing block. Blocks opened by the broken
        # statement are skipped whole.
        depth = 0
        while not self._check_current(TokenKind.EOF):
            if self._check_current(TokenKind.SEMICOLON) and depth == 0:
                self._advance_token()
                return
            if self._check_current(TokenKind.RBRACE):
                if depth == 0:
                    return
                depth -= 1
            if self._check_current(TokenKind.LBRACE):
                depth += 1
            self._advance_token()

    def _parse_statement_or_recover(self) -> Optional[AstStatement]:
        try:
            return self.parse_statement()
        except ParseError as e:
            self.diagnostics.append(e)
            self._synchronize()
            return None

    def parse_program(self) -> AstProgram:
        location = self.current_token.location
        statements: list[AstStatement] = list()
        while not self._check_current(TokenKind.EOF):
            if self._check_current(TokenKind.SEMICOLON):
                self._advance_token()
                continue
            if self._check_current(TokenKind.RBRACE):
                self.diagnostics.append(
                    ParseError(
                        self.current_token.location,
                        f"unexpected {quote(self.current_token)}",
                    )
                )
                self._advance_token()
                continue
            statement = self._parse_statement_or_recover()
            if statement is not None:
                statements.append(statement)
        return AstProgram(location, tuple(statements))

    def parse_identifier(self) -> AstIdentifier:
        token = self._expect_current(TokenKind.IDENTIFIER)
        return AstIdentifier(token.location, token.literal)

    def parse_expression(
        self, precedence: Precedence = Precedence.LOWEST
    ) -> AstExpression:
        def get_precedence(kind: TokenKind) -> Precedence:
            return Parser.PRECEDENCES.get(kind, Precedence.LOWEST)

        parse_nud = self.parse_nud_functions.get(self.current_token.kind)
        if parse_nud is None:
            raise ParseError(
                self.current_token.location,
                f"expected expression, found {quote(self.current_token)}",
            )
        expression = parse_nud(self)
        while precedence < get_precedence(self.current_token.kind):
            parse_led = self.parse_led_functions.get(self.current_token.kind, None)
            if parse_led is None:
                return expression
            expression = parse_led(self, expression)
        return expression

    def _parse_expression_list(self, end: TokenKind) -> tuple[AstExpression, ...]:
        expressions: list[AstExpression] = list()
        while not self._check_current(end):
            if len(expressions) != 0:
                self._expect_current(TokenKind.COMMA)
            if self._check_current(end):
                break
            expressions.append(self.parse_expression())
        self._expect_current(end)
        return tuple(expressions)

    def parse_expression_identifier(self) -> AstExpressionIdentifier:
        token = self._expect_current(TokenKind.IDENTIFIER)
        return AstExpressionIdentifier(token.location, token.literal)

    def parse_expression_integer(self) -> AstExpressionInteger:
        token = self._expect_current(TokenKind.INTEGER)
        value = int(token.literal)
        if value > INT64_MAX:
            raise ParseError(
                token.location,
                f"could not parse {quote(token.literal)} as a 64-bit integer",
            )
        return AstExpressionInteger(token.location, value)

    def parse_expression_string(self) -> AstExpressionString:
        token = self._expect_current(TokenKind.STRING)
        assert token.string is not None
        return AstExpressionString(token.location, token.string)

    def parse_expression_boolean(self) -> AstExpressionBoolean:
        if self._check_current(TokenKind.TRUE):
            location = self._expect_current(TokenKind.TRUE).location
            return AstExpressionBoolean(location, True)
        if self._check_current(TokenKind.FALSE):
            location = self._expect_current(TokenKind.FALSE).location
            return AstExpressionBoolean(location, False)
        raise ParseError(
            self.current_token.location,
            f"expected boolean, found {quote(self.current_token)}",
        )

    def parse_expression_prefix(self) -> AstExpressionPrefix:
        token = self._advance_token()
        operand = self.parse_expression(Precedence.PREFIX)
        return AstExpressionPrefix(token.location, token.literal, operand)

    def parse_expression_infix(self, lhs: AstExpression) -> AstExpressionInfix:
        token = self._advance_token()
        rhs = self.parse_expression(Parser.PRECEDENCES[token.kind])
        return AstExpressionInfix(token.location, token.literal, lhs, rhs)

    def parse_expression_grouped(self) -> AstExpression:
        self._expect_current(TokenKind.LPAREN)
        expression = self.parse_expression()
        self._expect_current(TokenKind.RPAREN)
        return expression

    def parse_expression_array(self) -> AstExpressionArray:
        location = self._expect_current(TokenKind.LBRACKET).location
        elements = self._parse_expression_list(TokenKind.RBRACKET)
        return AstExpressionArray(location, elements)

    def parse_expression_if(self) -> AstExpressionIf:
        location = self._expect_current(TokenKind.IF).location
        self._expect_current(TokenKind.LPAREN)
        condition = self.parse_expression()
        self._expect_current(TokenKind.RPAREN)
        consequence = self.parse_block()
        alternative: Optional[AstBlock] = None
        if self._check_current(TokenKind.ELSE):
            self._expect_current(TokenKind.ELSE)
            alternative = self.parse_block()
        return AstExpressionIf(location, condition, consequence, alternative)

    def parse_expression_function(self) -> AstExpressionFunction:
        location = self._expect_current(TokenKind.FUNCTION).location
        name: Optional[str] = None
        if self._check_current(TokenKind.IDENTIFIER):
            name = self._advance_token().literal
        parameters: list[AstIdentifier] = list()
        self._expect_current(TokenKind.LPAREN)
        while not self._check_current(TokenKind.RPAREN):
            if len(parameters) != 0:
                self._expect_current(TokenKind.COMMA)
            parameters.append(self.parse_identifier())
        self._expect_current(TokenKind.RPAREN)
        body = self.parse_block()
        for i in range(len(parameters)):
            for j in range(i + 1, len(parameters)):
                if parameters[i].name == parameters[j].name:
                    raise ParseError(
                        parameters[j].location,
                        f"duplicate function parameter {quote(parameters[i].name)}",
                    )
        return AstExpressionFunction(location, tuple(parameters), body, name)

    def parse_expression_call(
        self, lhs: AstExpression, module: Optional[str] = None
    ) -> AstExpressionCall:
        location = self._expect_current(TokenKind.LPAREN).location
        arguments = self._parse_expression_list(TokenKind.RPAREN)
        return AstExpressionCall(location, lhs, arguments, module)

    def parse_expression_index(self, lhs: AstExpression) -> AstExpressionIndex:
        location = self._expect_current(TokenKind.LBRACKET).location
        index = self.parse_expression()
        self._expect_current(TokenKind.RBRACKET)
        return AstExpressionIndex(location, lhs, index)

    def parse_expression_external(self, lhs: AstExpression) -> AstExpressionExternal:
        location = self._expect_current(TokenKind.DOT).location
        if not isinstance(lhs, AstExpressionIdentifier):
            raise ParseError(
                location,
                f"expected module name before {quote(TokenKind.DOT)}, found {quote(lhs)}",
            )
        identifier = self.parse_expression_identifier()
        if self._check_current(TokenKind.LPAREN):
            call = self.parse_expression_call(identifier, lhs.name)
            return AstExpressionExternal(location, lhs.name, call)
        return AstExpressionExternal(location, lhs.name, identifier)

    def parse_block(self) -> AstBlock:
        location = self._expect_current(TokenKind.LBRACE).location
        statements: list[AstStatement] = list()
        while not self._check_current(TokenKind.RBRACE):
            if self._check_current(TokenKind.EOF):
                raise ParseError(
                    self.current_token.location,
                    f"expected {quote(TokenKind.RBRACE)}, found {quote(self.current_token)}",
                )
            if self._check_current(TokenKind.SEMICOLON):
                self._advance_token()
                continue
            statement = self._parse_statement_or_recover()
            if statement is not None:
                statements.append(statement)
        self._expect_current(TokenKind.RBRACE)
        return AstBlock(location, tuple(statements))

    def parse_statement(self) -> AstStatement:
        if self._check_current(TokenKind.USE):
            return self.parse_statement_use()
        if self._check_current(TokenKind.LET):
            return self.parse_statement_let()
        if self._check_current(TokenKind.WHILE):
            return self.parse_statement_while()
        if self._check_current(TokenKind.RETURN):
            return self.parse_statement_return()
        if self._check_current(TokenKind.IDENTIFIER) and self._check_peek(
            TokenKind.ASSIGN
        ):
            return self.parse_statement_reassignment()
        return self.parse_statement_expression()

    def parse_statement_use(self) -> AstStatementUse:
        location = self._expect_current(TokenKind.USE).location
        module = self._expect_current(TokenKind.IDENTIFIER).literal
        self._skip_semicolon()
        return AstStatementUse(location, module)

    def parse_statement_let(self) -> AstStatementLet:
        location = self._expect_current(TokenKind.LET).location
        identifier = self.parse_identifier()
        self._expect_current(TokenKind.ASSIGN)
        expression = self.parse_expression()
        self._skip_semicolon()
        return AstStatementLet(location, identifier, expression)

    def parse_statement_while(self) -> AstStatementWhile:
        location = self._expect_current(TokenKind.WHILE).location
        self._expect_current(TokenKind.LPAREN)
        if self._check_current(TokenKind.RPAREN):
            raise ParseError(
                self.current_token.location, "while loop must have a condition"
            )
        condition = self.parse_expression()
        self._expect_current(TokenKind.RPAREN)
        body = self.parse_block()
        self._skip_semicolon()
        return AstStatementWhile(location, condition, body)

    def parse_statement_return(self) -> AstStatementReturn:
        location = self._expect_current(TokenKind.RETURN).location
        expression: Optional[AstExpression] = None
        if not (
            self._check_current(TokenKind.SEMICOLON)
            or self._check_current(TokenKind.RBRACE)
            or self._check_current(TokenKind.EOF)
        ):
            expression = self.parse_expression()
        self._skip_semicolon()
        return AstStatementReturn(location, expression)

    def parse_statement_reassignment(self) -> AstStatementReassignment:
        identifier = self.parse_identifier()
        self._expect_current(TokenKind.ASSIGN)
        expression = self.parse_expression()
        self._skip_semicolon()
        return AstStatementReassignment(identifier.location, identifier, expression)

    def parse_statement_expression(self) -> AstStatementExpression:
        expression = self.parse_expression()
        self._skip_semicolon()
        return AstStatementExpression(expression.location, expression)


def parse(
    source: str,
    location: Optional[SourceLocation] = None,
    lines: Optional[Iterable[str]] = None,
) -> Tuple[AstProgram, list[str]]:
    parser = Parser(Lexer(source, location, lines))
    program = parser.parse_program()
    return (program, parser.errors)


def parse_file(path: Union[str, os.PathLike]) -> Tuple[AstProgram, list[str]]:
    # The file is handed to the lexer as a line source and read on demand.
    with open(path, "r", encoding="utf-8") as f:
        return parse("", SourceLocation(str(path), 1), f)


class ModuleRegistry:
    """
    Module environments of one evaluation session, keyed by module name.

    Modules are looked up as `<name>.mk` in the current working directory (or
    the given directory), then in each directory of the search path, which
    defaults to the colon separated MK_SEARCH_PATH environment variable.
    """

    EXTENSION = ".mk"

    def __init__(
        self,
        directory: Optional[Union[str, os.PathLike]] = None,
        search_path: Optional[list[Union[str, os.PathLike]]] = None,
        extension: str = EXTENSION,
    ):
        self.directory: Optional[Path] = Path(directory) if directory is not None else None
        if search_path is None:
            MK_SEARCH_PATH = os.environ.get("MK_SEARCH_PATH")
            search_path = list(MK_SEARCH_PATH.split(":")) if MK_SEARCH_PATH else []
        self.search_path: list[Path] = [Path(p) for p in search_path]
        self.extension: str = extension
        self.environments: dict[str, Environment] = dict()

    def resolve(self, name: str) -> Optional[Path]:
        directory = self.directory if self.directory is not None else Path.cwd()
        for d in [directory] + self.search_path:
            path = d / f"{name}{self.extension}"
            if path.is_file():
                return path
        return None


def is_truthy(value: Value) -> bool:
    return value is not NULL and value is not FALSE


class Evaluator:
    def __init__(
        self,
        modules: Optional[ModuleRegistry] = None,
        builtins: Optional[dict[str, Builtin]] = None,
    ):
        self.modules: ModuleRegistry = modules if modules is not None else ModuleRegistry()
        self.builtins: dict[str, Builtin] = builtins if builtins is not None else BUILTINS

    def run(self, program: AstProgram, env: Environment) -> Union[Value, Error]:
        """
        Evaluate a whole program with the recursion limit raised to at least
        RECURSION_LIMIT. Exhausting the limit produces an error value.
        """
        previous = sys.getrecursionlimit()
        sys.setrecursionlimit(max(previous, RECURSION_LIMIT))
        try:
            result = self.eval(program, env)
        except RecursionError:
            return Error(None, "maximum recursion depth exceeded")
        finally:
            sys.setrecursionlimit(previous)
        assert not isinstance(result, Return)  # unwrapped by the program
        return result

    def eval(self, node: AstNode, env: Environment) -> Result:
        match node:
            case AstProgram():
                return self._eval_program(node, env)
            case AstBlock():
                return self._eval_block(node, env)
            case AstStatementExpression():
                return self.eval(node.expression, env)
            case AstStatementLet():
                return self._eval_let(node, env)
            case AstStatementReassignment():
                return self._eval_reassignment(node, env)
            case AstStatementReturn():
                return self._eval_return(node, env)
            case AstStatementUse():
                return self._eval_use(node)
            case AstStatementWhile():
                return self._eval_while(node, env)
            case AstExpressionIdentifier():
                return self._eval_identifier(node, env)
            case AstExpressionInteger():
                return Integer(node.value)
            case AstExpressionString():
                return String(node.value)
            case AstExpressionBoolean():
                return Boolean.new(node.value)
            case AstExpressionArray():
                return self._eval_array(node, env)
            case AstExpressionPrefix():
                return self._eval_prefix(node, env)
            case AstExpressionInfix():
                return self._eval_infix(node, env)
            case AstExpressionIf():
                return self._eval_if(node, env)
            case AstExpressionFunction():
                return self._eval_function(node, env)
            case AstExpressionCall():
                return self._eval_call(node, env)
            case AstExpressionIndex():
                return self._eval_index(node, env)
            case AstExpressionExternal():
                return self._eval_external(node, env)
        raise NotImplementedError(f"cannot evaluate {type(node).__name__}")

    def _eval_program(self, program: AstProgram, env: Environment) -> Union[Value, Error]:
        result: Result = NULL
        for statement in program.statements:
            result = self.eval(statement, env)
            if isinstance(result, Return):
                return result.value
            if isinstance(result, Error):
                return result
        return result

    def _eval_block(self, block: AstBlock, env: Environment) -> Result:
        # Blocks share the scope they appear in; only calls open a new one.
        result: Result = NULL
        for statement in block.statements:
            result = self.eval(statement, env)
            if isinstance(result, (Return, Error)):
                return result
        return result

    def _eval_let(self, node: AstStatementLet, env: Environment) -> Result:
        name = node.identifier.name
        if env.declared(name):
            return Error(node.location, f"variable {quote(name)} already declared")
        value = self.eval(node.expression, env)
        if isinstance(value, (Return, Error)):
            return value
        env.let(name, value)
        return value

    def _eval_reassignment(
        self, node: AstStatementReassignment, env: Environment
    ) -> Result:
        name = node.identifier.name
        lookup = env.lookup(name)
        if lookup is None:
            return Error(node.location, f"identifier {quote(name)} not found")
        value = self.eval(node.expression, env)
        if isinstance(value, (Return, Error)):
            return value
        # Rebind in the frame that holds the binding, not the local frame.
        lookup.store[name] = value
        return value

    def _eval_return(self, node: AstStatementReturn, env: Environment) -> Result:
        if node.expression is None:
            return Return(NULL)
        value = self.eval(node.expression, env)
        if isinstance(value, (Return, Error)):
            return value
        return Return(value)

    def _eval_use(self, node: AstStatementUse) -> Result:
        module = self.load_module(node.module, node.location)
        if isinstance(module, Error):
            return module
        return NULL

    def _eval_while(self, node: AstStatementWhile, env: Environment) -> Result:
        while True:
            condition = self.eval(node.condition, env)
            if isinstance(condition, (Return, Error)):
                return condition
            if not is_truthy(condition):
                return NULL
            result = self.eval(node.body, env)
            if isinstance(result, (Return, Error)):
                return result

    def _eval_identifier(
        self, node: AstExpressionIdentifier, env: Environment
    ) -> Result:
        value = env.get(node.name)
        if value is not None:
            return value
        builtin = self.builtins.get(node.name)
        if builtin is not None:
            return builtin
        return Error(node.location, f"invalid identifier {quote(node.name)}")

    def _eval_array(self, node: AstExpressionArray, env: Environment) -> Result:
        elements: list[Value] = list()
        for x in node.elements:
            result = self.eval(x, env)
            if isinstance(result, (Return, Error)):
                return result
            elements.append(result)
        return Array(elements)

    def _eval_prefix(self, node: AstExpressionPrefix, env: Environment) -> Result:
        operand = self.eval(node.operand, env)
        if isinstance(operand, (Return, Error)):
            return operand
        if node.operator == str(TokenKind.NOT):
            return FALSE if operand is TRUE else TRUE
        if node.operator == str(TokenKind.SUB):
            if not isinstance(operand, Integer):
                return Error(
                    node.location,
                    f"expected integer operand for unary -, received {quote(operand.typename())}",
                )
            return Integer.new(-operand.data)
        return Error(node.location, f"unknown operator {quote(node.operator)}")

    def _eval_infix(self, node: AstExpressionInfix, env: Environment) -> Result:
        lhs = self.eval(node.lhs, env)
        if isinstance(lhs, (Return, Error)):
            return lhs
        rhs = self.eval(node.rhs, env)
        if isinstance(rhs, (Return, Error)):
            return rhs
        if type(lhs) is not type(rhs) or not isinstance(lhs, (Integer, Boolean, String)):
            return Error(
                node.location,
                f"mismatched operand types for {quote(node.operator)}: {quote(lhs.typename())} and {quote(rhs.typename())}",
            )
        if isinstance(lhs, Integer) and isinstance(rhs, Integer):
            return self._eval_infix_integer(node, lhs.data, rhs.data)
        if isinstance(lhs, Boolean):
            match node.operator:
                case "==":
                    return Boolean.new(lhs is rhs)
                case "!=":
                    return Boolean.new(lhs is not rhs)
        if isinstance(lhs, String) and isinstance(rhs, String):
            match node.operator:
                case "+":
                    return String(lhs.data + rhs.data)
                case "==":
                    return Boolean.new(lhs.data == rhs.data)
                case "!=":
                    return Boolean.new(lhs.data != rhs.data)
        return Error(
            node.location,
            f"unsupported operator {quote(node.operator)} for type {quote(lhs.typename())}",
        )

    def _eval_infix_integer(
        self, node: AstExpressionInfix, lhs: int, rhs: int
    ) -> Union[Value, Error]:
        match node.operator:
            case "+":
                return Integer.new(lhs + rhs)
            case "-":
                return Integer.new(lhs - rhs)
            case "*":
                return Integer.new(lhs * rhs)
            case "/":
                if rhs == 0:
                    return Error(node.location, "division by zero")
                # Truncate toward zero, as 64-bit machine division does.
                quotient = abs(lhs) // abs(rhs)
                return Integer.new(quotient if (lhs < 0) == (rhs < 0) else -quotient)
            case "==":
                return Boolean.new(lhs == rhs)
            case "!=":
                return Boolean.new(lhs != rhs)
            case "<":
                return Boolean.new(lhs < rhs)
            case ">":
                return Boolean.new(lhs > rhs)
        return Error(
            node.location,
            f"unsupported operator {quote(node.operator)} for type {quote(Integer.typename())}",
        )

    def _eval_if(self, node: AstExpressionIf, env: Environment) -> Result:
        condition = self.eval(node.condition, env)
        if isinstance(condition, (Return, Error)):
            return condition
        if is_truthy(condition):
            return self.eval(node.consequence, env)
        if node.alternative is not None:
            return self.eval(node.alternative, env)
        return NULL

    def _eval_function(
        self, node: AstExpressionFunction, env: Environment
    ) -> Result:
        function = Function(node, env)
        if node.name is not None:
            env.let(node.name, function)
        return function

    def _eval_call(self, node: AstExpressionCall, env: Environment) -> Result:
        if node.module is not None:
            module = self.load_module(node.module, node.location)
            if isinstance(module, Error):
                return module
            function = self.eval(node.function, module)
        else:
            function = self.eval(node.function, env)
        if isinstance(function, (Return, Error)):
            return function
        if not isinstance(function, (Function, Builtin)):
            return Error(
                node.location,
                f"attempted to call non-function type {quote(function.typename())} with value {function}",
            )

        # Arguments always come from the caller's scope.
        arguments: list[Value] = list()
        for argument in node.arguments:
            result = self.eval(argument, env)
            if isinstance(result, (Return, Error)):
                return result
            arguments.append(result)
        return self.call(node.location, function, arguments)

    def call(
        self,
        location: Optional[SourceLocation],
        function: Union[Function, Builtin],
        arguments: list[Value],
    ) -> Union[Value, Error]:
        if isinstance(function, Builtin):
            produced = function.call(arguments)
            if isinstance(produced, Error):
                produced.trace.append(Error.TraceElement(location, function))
            return produced
        assert isinstance(function, Function)
        if len(arguments) != len(function.ast.parameters):
            return Error(
                location,
                f"invalid function argument count (expected {len(function.ast.parameters)}, received {len(arguments)})",
            )
        env = Environment(function.env)
        for parameter, argument in zip(function.ast.parameters, arguments):
            env.let(parameter.name, argument)
        result = self.eval(function.ast.body, env)
        if isinstance(result, Return):
            return result.value
        if isinstance(result, Error):
            result.trace.append(Error.TraceElement(location, function))
        return result

    def _eval_index(self, node: AstExpressionIndex, env: Environment) -> Result:
        array = self.eval(node.array, env)
        if isinstance(array, (Return, Error)):
            return array
        index = self.eval(node.index, env)
        if isinstance(index, (Return, Error)):
            return index
        if not isinstance(array, Array):
            return Error(
                node.location,
                f"attempted to index non-array type {quote(array.typename())}",
            )
        if not isinstance(index, Integer):
            return Error(
                node.location,
                f"expected integer index, received {quote(index.typename())}",
            )
        if not 0 <= index.data < len(array.elements):
            return Error(
                node.location,
                f"index {index.data} out of range for array of length {len(array.elements)}",
            )
        return array.elements[index.data]

    def _eval_external(
        self, node: AstExpressionExternal, env: Environment
    ) -> Result:
        module = self.load_module(node.module, node.location)
        if isinstance(module, Error):
            return module
        if isinstance(node.reference, AstExpressionCall):
            return self.eval(node.reference, env)
        return self.eval(node.reference, module)

    def load_module(
        self, name: str, location: Optional[SourceLocation] = None
    ) -> Union[Environment, Error]:
        env = self.modules.environments.get(name)
        if env is not None:
            return env
        path = self.modules.resolve(name)
        if path is None:
            return Error(location, f"module {quote(name)} not found")
        try:
            program, errors = parse_file(path)
        except OSError as e:
            return Error(location, f"module {quote(name)} could not be read: {e}")
        if len(errors) != 0:
            return Error(
                location,
                f"module {quote(name)} failed to parse: " + "; ".join(errors),
            )
        # Cached before evaluation so that cyclic uses see the same environment.
        env = Environment()
        self.modules.environments[name] = env
        try:
            result = self.eval(program, env)
        except BaseException:
            # A half-evaluated module must not be found by a later use.
            del self.modules.environments[name]
            raise
        if isinstance(result, Error):
            del self.modules.environments[name]
            return result
        return env


# @builtin("len", [(String, Array)])
# def builtin_len(value: Union[String, Array]) -> Value: ...
#
# Builtins declared without argument types receive every argument as-is.
def builtin(nameof: str, args: Optional[list] = None):
    def decorator(func: Callable) -> Type[Builtin]:
        class GeneratedBuiltin(Builtin):
            name = nameof

            def function(self, arguments: list[Value]) -> Optional[Union[Value, Error]]:
                if args is None:
                    return func(*arguments)

                Builtin.expect_argument_count(arguments, len(args))
                processed_args = [
                    Builtin.typed_argument(arguments, i, arg_type)
                    for i, arg_type in enumerate(args)
                ]
                return func(*processed_args)

        GeneratedBuiltin.__name__ = f"Builtin_{func.__name__}"
        return GeneratedBuiltin

    return decorator


RE_DECIMAL = re2.compile(r"[+-]?[0-9]+")


@builtin("len", [(String, Array)])
def builtin_len(value: Union[String, Array]) -> Value:
    if isinstance(value, String):
        # Length in bytes of the UTF-8 encoding.
        return Integer(len(value.data.encode("utf-8")))
    return Integer(len(value.elements))


@builtin("puts")
def builtin_puts(*values: Value) -> Value:
    if len(values) == 0:
        raise InvalidArguments("expected at least 1 argument, received 0")
    for value in values:
        print(value)
    return NULL


@builtin("read", [String])
def builtin_read(prompt: String) -> Value:
    print(prompt)
    line = sys.stdin.readline()
    return String(line[:-1] if line.endswith("\n") else line)


@builtin("int", [(String, Integer)])
def builtin_int(value: Union[String, Integer]) -> Value:
    if isinstance(value, Integer):
        return value
    if RE_DECIMAL.fullmatch(value.data) is None:
        raise ValueError(f"cannot convert {quote(value.data)} to an integer")
    number = int(value.data)
    if not INT64_MIN <= number <= INT64_MAX:
        raise ValueError(f"value {value.data} is out of range for a 64-bit integer")
    return Integer(number)


@builtin("str", [Integer])
def builtin_str(value: Integer) -> Value:
    return String(str(value.data))


BUILTINS: dict[str, Builtin] = {
    "len": builtin_len(),
    "puts": builtin_puts(),
    "read": builtin_read(),
    "int": builtin_int(),
    "str": builtin_str(),
}


def eval_source(
    source: str,
    env: Optional[Environment] = None,
    evaluator: Optional[Evaluator] = None,
) -> Union[Value, Error]:
    program, errors = parse(source)
    return _run_program(program, errors, env, evaluator)


def eval_file(
    path: Union[str, os.PathLike],
    env: Optional[Environment] = None,
    evaluator: Optional[Evaluator] = None,
) -> Union[Value, Error]:
    program, errors = parse_file(path)
    return _run_program(program, errors, env, evaluator)


def _run_program(
    program: AstProgram,
    errors: list[str],
    env: Optional[Environment],
    evaluator: Optional[Evaluator],
) -> Union[Value, Error]:
    if len(errors) != 0:
        raise ParseError(None, "\n".join(errors))
    evaluator = evaluator if evaluator is not None else Evaluator()
    return evaluator.run(program, env if env is not None else Environment())


class Repl(code.InteractiveConsole):
    def __init__(
        self, evaluator: Optional[Evaluator] = None, env: Optional[Environment] = None
    ):
        super().__init__()
        self.evaluator = evaluator if evaluator is not None else Evaluator()
        self.env = env if env is not None else Environment()

    def runsource(self, source, filename="<input>", symbol="single"):
        parser = Parser(Lexer(source))
        program = parser.parse_program()
        if len(parser.errors) != 0:
            if not source.endswith("\n"):
                # Assume the user has not finished entering their program, and
                # wait for an additional newline before producing an error.
                return True
            for message in parser.errors:
                print(f"\t{message}")
            return False
        # If the program is valid, but did not end in a semicolon or additional
        # newline, then assume that there may be additional source to process,
        # e.g. the else clause of an if-else expression.
        if not (source.endswith("\n") or source.rstrip().endswith(";")):
            return True
        result = self.evaluator.run(program, self.env)
        if isinstance(result, Error):
            print(result.describe())
        else:
            print(result)
        return False


def main() -> None:
    description = "The mk Programming Language"
    parser = ArgumentParser(description=description)
    parser.add_argument("file", type=str, nargs="?", default=None)
    args = parser.parse_args()

    if args.file is not None:
        try:
            program, errors = parse_file(args.file)
        except OSError as e:
            print(f"error: {e}", file=sys.stderr)
            sys.exit(1)
        if len(errors) != 0:
            for message in errors:
                print(f"Parsing error: {message}", file=sys.stderr)
            sys.exit(1)
        result = Evaluator().run(program, Environment())
        if isinstance(result, Error):
            print(result.describe(), file=sys.stderr)
            for element in result.trace:
                s = f"...within {element.function}"
                if element.location is not None:
                    s += f" called from {element.location}"
                print(s, file=sys.stderr)
            sys.exit(1)
    else:
        HOME = os.environ.get("MK_HOME", Path.home())
        HISTFILE = Path(HOME) / ".mk-history"
        HISTFILE_SIZE = 4096
        if readline and os.path.exists(HISTFILE):
            readline.read_history_file(HISTFILE)
        sys.ps1 = ">> "
        sys.ps2 = ".. "
        repl = Repl()
        repl.interact(banner="", exitmsg="")
        if readline:
            readline.set_history_length(HISTFILE_SIZE)
            readline.write_history_file(HISTFILE)


if __name__ == "__main__":
    main()

import pytest

from mk import Lexer, SourceLocation, Token, TokenKind


def tokens(source, location=None, lines=None):
    lexer = Lexer(source, location, lines)
    result = []
    while True:
        token = lexer.next_token()
        result.append(token)
        if token.kind == TokenKind.EOF:
            return result


def kinds(source):
    return [token.kind for token in tokens(source)]


def test_operators_and_delimiters():
    assert kinds("= == ! != < > + - * / . , ; ( ) { } [ ]") == [
        TokenKind.ASSIGN,
        TokenKind.EQ,
        TokenKind.NOT,
        TokenKind.NE,
        TokenKind.LT,
        TokenKind.GT,
        TokenKind.ADD,
        TokenKind.SUB,
        TokenKind.MUL,
        TokenKind.DIV,
        TokenKind.DOT,
        TokenKind.COMMA,
        TokenKind.SEMICOLON,
        TokenKind.LPAREN,
        TokenKind.RPAREN,
        TokenKind.LBRACE,
        TokenKind.RBRACE,
        TokenKind.LBRACKET,
        TokenKind.RBRACKET,
        TokenKind.EOF,
    ]


def test_adjacent_operators():
    assert kinds("a==b!=!c") == [
        TokenKind.IDENTIFIER,
        TokenKind.EQ,
        TokenKind.IDENTIFIER,
        TokenKind.NE,
        TokenKind.NOT,
        TokenKind.IDENTIFIER,
        TokenKind.EOF,
    ]


def test_let_statement():
    result = tokens("let five = 5;")
    assert [(t.kind, t.literal) for t in result] == [
        (TokenKind.LET, "let"),
        (TokenKind.IDENTIFIER, "five"),
        (TokenKind.ASSIGN, "="),
        (TokenKind.INTEGER, "5"),
        (TokenKind.SEMICOLON, ";"),
        (TokenKind.EOF, ""),
    ]


@pytest.mark.parametrize(
    "text,kind",
    [
        ("fn", TokenKind.FUNCTION),
        ("let", TokenKind.LET),
        ("use", TokenKind.USE),
        ("while", TokenKind.WHILE),
        ("true", TokenKind.TRUE),
        ("false", TokenKind.FALSE),
        ("if", TokenKind.IF),
        ("else", TokenKind.ELSE),
        ("return", TokenKind.RETURN),
        ("lettuce", TokenKind.IDENTIFIER),
        ("_fn", TokenKind.IDENTIFIER),
        ("x1", TokenKind.IDENTIFIER),
    ],
)
def test_lookup_identifier(text, kind):
    assert Token.lookup_identifier(text) == kind
    assert kinds(text) == [kind, TokenKind.EOF]


def test_identifier_with_digits_and_underscores():
    result = tokens("foo_bar2 9lives")
    assert [(t.kind, t.literal) for t in result] == [
        (TokenKind.IDENTIFIER, "foo_bar2"),
        (TokenKind.INTEGER, "9"),
        (TokenKind.IDENTIFIER, "lives"),
        (TokenKind.EOF, ""),
    ]


def test_string_escapes():
    (token, eof) = tokens(r'"a\tb\nc\"d\\e\q"')
    assert token.kind == TokenKind.STRING
    assert token.string == 'a\tb\nc"d\\e\\q'
    assert eof.kind == TokenKind.EOF


def test_empty_string():
    (token, _) = tokens('""')
    assert token.kind == TokenKind.STRING
    assert token.string == ""


def test_unterminated_string():
    lexer = Lexer('"abc')
    token = lexer.next_token()
    assert token.kind == TokenKind.STRING
    assert token.string == "abc"
    assert [str(e) for e in lexer.errors] == ["unterminated string literal"]
    assert lexer.next_token().kind == TokenKind.EOF


def test_illegal_character():
    result = tokens("1 @ 2")
    assert [t.kind for t in result] == [
        TokenKind.INTEGER,
        TokenKind.ILLEGAL,
        TokenKind.INTEGER,
        TokenKind.EOF,
    ]
    assert str(result[1]) == "@"


def test_eof_token_text():
    (eof,) = tokens("   \t\n ")
    assert eof.kind == TokenKind.EOF
    assert str(eof) == "end-of-file"


def test_locations_across_newlines():
    result = tokens("let x = 1;\n\nx", SourceLocation("main.mk", 1))
    assert [t.location.line for t in result] == [1, 1, 1, 1, 1, 3, 3]
    assert str(result[0].location) == "main.mk, line 1"


def test_lines_pulled_on_demand():
    pulled = []

    def source():
        for line in ["let a = 1;\n", "\n", "a + 2\n"]:
            pulled.append(line)
            yield line

    lexer = Lexer("", SourceLocation(None, 1), source())
    first = lexer.next_token()
    assert first.kind == TokenKind.LET
    assert pulled == ["let a = 1;\n"]

    rest = []
    while True:
        token = lexer.next_token()
        rest.append(token)
        if token.kind == TokenKind.EOF:
            break
    assert [t.literal for t in rest] == ["a", "=", "1", ";", "a", "+", "2", ""]
    assert [t.location.line for t in rest[:4]] == [1, 1, 1, 1]
    assert [t.location.line for t in rest[4:7]] == [3, 3, 3]


def test_append():
    lexer = Lexer("1 +")
    assert lexer.next_token().kind == TokenKind.INTEGER
    assert lexer.next_token().kind == TokenKind.ADD
    lexer.append("2\n")
    token = lexer.next_token()
    assert (token.kind, token.literal) == (TokenKind.INTEGER, "2")
    assert lexer.next_token().kind == TokenKind.EOF

"""Parsing of the orchestra attribute arguments.

The arguments are a comma separated list of ``key = value`` items, for
example ``gen=AllMessages, event=Ev, signal=Sig, error=Yikes``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

__all__ = [
    "AttrParseError",
    "OrchestraAttrArgs",
    "parse_orchestra_attr",
    "DEFAULT_SIGNAL_CHANNEL_CAPACITY",
    "DEFAULT_MESSAGE_CHANNEL_CAPACITY",
]

DEFAULT_SIGNAL_CHANNEL_CAPACITY = 64
DEFAULT_MESSAGE_CHANNEL_CAPACITY = 1024

_USIZE_MAX = 2**64 - 1

# Words that cannot be used as identifiers at all.
_RESERVED = frozenset(
    {
        "as", "async", "await", "break", "const", "continue", "dyn", "else",
        "enum", "extern", "false", "fn", "for", "if", "impl", "in", "let",
        "loop", "match", "mod", "move", "mut", "pub", "ref", "return",
        "static", "struct", "trait", "true", "type", "unsafe", "use", "where",
        "while", "abstract", "become", "box", "do", "final", "macro",
        "override", "priv", "typeof", "unsized", "virtual", "yield", "try",
        "self", "Self", "super", "crate", "_",
    }
)
# Keywords that may still appear as path segments.
_PATH_KEYWORDS = frozenset({"self", "Self", "super", "crate"})

_TOKEN_RE = re.compile(
    r"(?P<ws>\s+)"
    r"|(?P<punct>::|[=,<>])"
    r"|(?P<ident>[A-Za-z_][A-Za-z0-9_]*)"
    r"|(?P<int>[0-9][0-9A-Za-z_]*)"
)

_INT_RE = re.compile(
    r"(?P<digits>0x[0-9a-fA-F_]+|0o[0-7_]+|0b[01_]+|[0-9][0-9_]*)"
    r"(?P<suffix>i8|i16|i32|i64|i128|isize|u8|u16|u32|u64|u128|usize)?"
)
_BASES = {"0x": 16, "0o": 8, "0b": 2}


class AttrParseError(ValueError):
    """The attribute arguments are malformed or incomplete."""

    def __init__(self, message: str, position: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.position = position


@dataclass(frozen=True)
class OrchestraAttrArgs:
    """The parsed arguments of an orchestra declaration."""

    message_wrapper: str
    extern_event_ty: str
    extern_signal_ty: str
    extern_error_ty: str
    outgoing_ty: Optional[str] = None
    signal_channel_capacity: int = DEFAULT_SIGNAL_CHANNEL_CAPACITY
    message_channel_capacity: int = DEFAULT_MESSAGE_CHANNEL_CAPACITY
    boxed_messages: bool = False


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    position: int


def _tokenize(text: str) -> list[_Token]:
    tokens = []
    position = 0
    while position < len(text):
        match = _TOKEN_RE.match(text, position)
        if match is None:
            raise AttrParseError(
                f"unexpected character {text[position]!r}", position
            )
        kind = match.lastgroup
        if kind != "ws":
            tokens.append(_Token(kind, match.group(), position))
        position = match.end()
    return tokens


class _Parser:
    def __init__(self, text: str) -> None:
        self._tokens = _tokenize(text)
        self._end = len(text)
        self._next = 0

    def _peek(self) -> Optional[_Token]:
        return self._tokens[self._next] if self._next < len(self._tokens) else None

    def _position(self) -> int:
        token = self._peek()
        return token.position if token else self._end

    def _take(self) -> _Token:
        token = self._peek()
        if token is None:
            raise AttrParseError("unexpected end of input", self._end)
        self._next += 1
        return token

    def _peek_punct(self, punct: str) -> bool:
        token = self._peek()
        return token is not None and token.kind == "punct" and token.text == punct

    def _expect_punct(self, punct: str) -> None:
        if not self._peek_punct(punct):
            raise AttrParseError(f"expected `{punct}`", self._position())
        self._take()

    def at_end(self) -> bool:
        return self._peek() is None

    def ident(self) -> str:
        token = self._peek()
        if token is None or token.kind != "ident" or token.text in _RESERVED:
            raise AttrParseError("expected identifier", self._position())
        return self._take().text

    def _segment(self) -> str:
        token = self._peek()
        if (
            token is None
            or token.kind != "ident"
            or (token.text in _RESERVED and token.text not in _PATH_KEYWORDS)
        ):
            raise AttrParseError("expected identifier", self._position())
        name = self._take().text
        if self._peek_punct("<"):
            name += self._generic_args()
        return name

    def _generic_args(self) -> str:
        self._expect_punct("<")
        args = []
        while not self._peek_punct(">"):
            args.append(self.path())
            if self._peek_punct(","):
                self._take()
            elif not self._peek_punct(">"):
                raise AttrParseError("expected `,` or `>`", self._position())
        self._take()
        return "<" + ", ".join(args) + ">"

    def path(self) -> str:
        text = ""
        if self._peek_punct("::"):
            self._take()
            text = "::"
        text += self._segment()
        while self._peek_punct("::"):
            self._take()
            if self._peek_punct("<"):
                text += "::" + self._generic_args()
            else:
                text += "::" + self._segment()
        return text

    def usize(self) -> int:
        token = self._peek()
        if token is None or token.kind != "int":
            raise AttrParseError("expected integer literal", self._position())
        self._take()
        match = _INT_RE.fullmatch(token.text)
        if match is None:
            raise AttrParseError("invalid integer literal", token.position)
        digits = match.group("digits")
        base = _BASES.get(digits[:2], 10)
        if base != 10:
            digits = digits[2:]
        digits = digits.replace("_", "")
        if not digits:
            raise AttrParseError("invalid integer literal", token.position)
        value = int(digits, base)
        if value > _USIZE_MAX:
            raise AttrParseError(
                "number too large to fit in target type", token.position
            )
        return value

    def boolean(self) -> bool:
        token = self._peek()
        if token is None or token.kind != "ident" or token.text not in ("true", "false"):
            raise AttrParseError("expected boolean literal", self._position())
        return self._take().text == "true"

    def item(self, parsers: dict[str, Callable[["_Parser"], Any]]) -> tuple[str, Any, int]:
        token = self._peek()
        if token is None or token.kind != "ident" or token.text not in parsers:
            expected = ", ".join(f"`{key}`" for key in parsers)
            raise AttrParseError(f"expected one of: {expected}", self._position())
        self._take()
        self._expect_punct("=")
        return token.text, parsers[token.text](self), token.position

    def items(
        self, parsers: dict[str, Callable[["_Parser"], Any]]
    ) -> Iterator[tuple[str, Any, int]]:
        while not self.at_end():
            yield self.item(parsers)
            if self.at_end():
                break
            self._expect_punct(",")


_ITEM_PARSERS: dict[str, Callable[[_Parser], Any]] = {
    "event": _Parser.path,
    "signal": _Parser.path,
    "error": _Parser.path,
    "outgoing": _Parser.path,
    "gen": _Parser.ident,
    "signal_capacity": _Parser.usize,
    "message_capacity": _Parser.usize,
    "boxed_messages": _Parser.boolean,
}

_REQUIRED = (
    ("error", "Must declare the orchestra error type via `error=..`."),
    ("event", "Must declare the orchestra event type via `event=..`."),
    ("signal", "Must declare the orchestra signal type via `signal=..`."),
    ("gen", "Must declare the orchestra generated wrapping message type via `gen=..`."),
)


def parse_orchestra_attr(text: str) -> OrchestraAttrArgs:
    """Parse the orchestra attribute arguments from ``text``.

    Raises AttrParseError on syntax errors, duplicate keys and missing
    required keys.
    """
    unique: dict[str, Any] = {}
    for key, value, position in _Parser(text).items(_ITEM_PARSERS):
        if key in unique:
            raise AttrParseError(
                "Duplicate definition of orchestra generation type found", position
            )
        unique[key] = value

    for key, message in _REQUIRED:
        if key not in unique:
            raise AttrParseError(message)

    return OrchestraAttrArgs(
        message_wrapper=unique["gen"],
        extern_event_ty=unique["event"],
        extern_signal_ty=unique["signal"],
        extern_error_ty=unique["error"],
        outgoing_ty=unique.get("outgoing"),
        signal_channel_capacity=unique.get(
            "signal_capacity", DEFAULT_SIGNAL_CHANNEL_CAPACITY
        ),
        message_channel_capacity=unique.get(
            "message_capacity", DEFAULT_MESSAGE_CHANNEL_CAPACITY
        ),
        boxed_messages=unique.get("boxed_messages", False),
    )
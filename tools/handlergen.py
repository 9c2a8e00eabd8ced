#!/usr/bin/env python3
"""handlergen enum-handler generator.

Input:  Rust source containing #[derive(Target)] enums, optionally configured
        with #[handler(returns = "...", trait_name = "...", method = "...")].
Output: transformed Rust source where every tagged enum is followed by its
        handler trait (one method per variant) and a dispatch method on the
        enum that forwards each variant's fields to that trait.
"""

from __future__ import annotations

import argparse
import dataclasses
import hashlib
import pathlib
import re
import sys
import textwrap
from typing import Dict, List, Optional, Sequence, Tuple

GENERATOR_VERSION = "0.1.0"
FORMAT_VERSION = "1"
DERIVE_NAME = "Target"
ATTRIBUTE_NAME = "handler"
CONFIG_KEYS = ("returns", "trait_name", "method")
UNIT_TYPE = "()"
DIGEST_PATTERN = re.compile(r"^// digest: ([0-9a-f]{64})$", re.MULTILINE)

ATTRIBUTE_START = re.compile(r"#\s*\[")
IDENT_RE = re.compile(r"(?:r#)?[A-Za-z_]\w*")
IDENTIFIER = re.compile(r"^(?:r#)?[A-Za-z_]\w*$")
PATH_RE = re.compile(r"(?:::)?[A-Za-z_]\w*(?:\s*::\s*[A-Za-z_]\w*)*")
VISIBILITY_RE = re.compile(r"pub(?:\s*\(\s*(?:crate|self|super|in\s+[\w:]+)\s*\))?(?!\w)")
FIELD_HEAD_RE = re.compile(r"\s*((?:r#)?[A-Za-z_]\w*)\s*:(?!:)")
HANDLER_ARG_RE = re.compile(r"\s*([A-Za-z_]\w*)\s*(=)?")
RAW_STRING_START = re.compile(r'b?r(#*)"')
CHAR_LITERAL = re.compile(r"'(?:\\(?:x[0-9a-fA-F]{2}|u\{[0-9a-fA-F]{1,6}\}|.)|[^\\'\n])'")
STRING_LITERAL = re.compile(r'^"((?:[^"\\]|\\.)*)"$', re.DOTALL)
RAW_STRING_LITERAL = re.compile(r'^r(#*)"(.*)"\1$', re.DOTALL)
DROPPED_LINE_TAIL = re.compile(r"[ \t]*(?:\r?\n[ \t]*)?")
SELF_TYPE = re.compile(r"(?<![\w#])Self\b")
STRING_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "0": "\0", "\\": "\\", '"': '"', "'": "'"}
CLOSERS = {"(": ")", "[": "]", "{": "}"}

RUST_KEYWORDS = frozenset(
    """
    as break const continue crate else enum extern false fn for if impl in let loop match mod
    move mut pub ref return self Self static struct super trait true type unsafe use where while
    async await dyn abstract become box do final macro override priv typeof unsized virtual
    yield try gen
    """.split()
)
# Keywords that cannot be written as raw identifiers either.
UNRAWABLE = frozenset(("self", "Self", "super", "crate", "_"))


class GenerationError(RuntimeError):
    def __init__(self, message: str, index: int = 0) -> None:
        super().__init__(message)
        self.index = index


class ConfigurationError(GenerationError):
    """Unknown, repeated or malformed #[handler(...)] option."""


class ShapeError(GenerationError):
    """Variant set the handler trait cannot be generated for."""


class StructuralError(GenerationError):
    """Source text that is not a well-formed tagged enum."""


class TypeSyntaxError(ValueError):
    pass


@dataclasses.dataclass
class AttributeArg:
    key: str
    value: Optional[str]  # raw source text after '=', None for a bare key
    index: int


@dataclasses.dataclass
class Attribute:
    path: str
    start: int
    end: int
    args_start: int = -1
    args_end: int = -1


@dataclasses.dataclass
class UnionDeclaration:
    name: str
    visibility: str
    body: str
    body_code: str
    body_index: int
    start: int
    item_start: int
    end: int
    attributes: List[AttributeArg] = dataclasses.field(default_factory=list)
    attribute_spans: List[Attribute] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class FieldDeclaration:
    name: Optional[str]  # None for positional fields
    type_name: str
    index: int = 0


@dataclasses.dataclass
class VariantDeclaration:
    name: str
    kind: str  # unit | named | positional
    fields: List[FieldDeclaration] = dataclasses.field(default_factory=list)
    index: int = 0


@dataclasses.dataclass(frozen=True)
class Configuration:
    returns: str
    trait_name: str
    method: str


@dataclasses.dataclass
class MethodSignature:
    name: str
    parameters: List[FieldDeclaration]
    returns: str


@dataclasses.dataclass
class GeneratedFragment:
    interface: str
    dispatcher: str

    @property
    def text(self) -> str:
        return f"{self.interface}\n\n{self.dispatcher}\n"


def line_col(text: str, index: int) -> Tuple[int, int]:
    line = text.count("\n", 0, index) + 1
    line_start = text.rfind("\n", 0, index)
    if line_start < 0:
        line_start = -1
    col = index - line_start
    return line, col


def fail(path: pathlib.Path, text: str, error: GenerationError) -> None:
    line, col = line_col(text, error.index)
    print(f"{path}:{line}:{col}: error: {error}", file=sys.stderr)


def normalize_type(type_name: str) -> str:
    return " ".join(type_name.strip().split())


def strip_raw(ident: str) -> str:
    return ident[2:] if ident.startswith("r#") else ident


# ---------------------------------------------------------------------------
# Declaration ingestion
# ---------------------------------------------------------------------------


def _blank(chars: List[str], start: int, end: int) -> None:
    for k in range(start, end):
        if chars[k] != "\n":
            chars[k] = " "


def _skip_block_comment(text: str, start: int) -> int:
    i = start
    n = len(text)
    depth = 0
    while i < n:
        if text.startswith("/*", i):
            depth += 1
            i += 2
            continue
        if text.startswith("*/", i):
            depth -= 1
            i += 2
            if depth == 0:
                return i
            continue
        i += 1
    raise StructuralError("unterminated block comment", start)


def mask_source(text: str) -> str:
    """Blank out comments and literal contents, keeping every index stable.

    Structural scanning runs on the masked copy; values are always sliced from
    the original text.
    """
    chars = list(text)
    i = 0
    n = len(text)

    while i < n:
        if text.startswith("//", i):
            j = text.find("\n", i + 2)
            if j == -1:
                j = n
            _blank(chars, i, j)
            i = j
            continue
        if text.startswith("/*", i):
            j = _skip_block_comment(text, i)
            _blank(chars, i, j)
            i = j
            continue

        ch = text[i]
        if ch in "br" and (i == 0 or not (text[i - 1].isalnum() or text[i - 1] == "_")):
            m = RAW_STRING_START.match(text, i)
            if m:
                terminator = '"' + m.group(1)
                j = text.find(terminator, m.end())
                if j == -1:
                    raise StructuralError("unterminated raw string literal", i)
                _blank(chars, m.end(), j)
                i = j + len(terminator)
                continue
        if ch == '"':
            j = i + 1
            while j < n and text[j] != '"':
                j += 2 if text[j] == "\\" else 1
            if j >= n:
                raise StructuralError("unterminated string literal", i)
            _blank(chars, i + 1, j)
            i = j + 1
            continue
        if ch == "'":
            m = CHAR_LITERAL.match(text, i)
            if m:
                _blank(chars, i + 1, m.end() - 1)
                i = m.end()
                continue
        i += 1

    return "".join(chars)


def skip_ws(code: str, i: int, end: Optional[int] = None) -> int:
    limit = len(code) if end is None else end
    while i < limit and code[i].isspace():
        i += 1
    return i


def find_matching_bracket(code: str, open_index: int) -> int:
    if open_index >= len(code) or code[open_index] not in CLOSERS:
        raise StructuralError("internal error: expected opening bracket", open_index)

    stack: List[str] = []
    for i in range(open_index, len(code)):
        ch = code[i]
        if ch in CLOSERS:
            stack.append(CLOSERS[ch])
        elif ch in ")]}":
            if not stack or stack.pop() != ch:
                raise StructuralError(f"mismatched '{ch}'", i)
            if not stack:
                return i

    raise StructuralError("unbalanced brackets", open_index)


def split_top_level(code: str, start: int, end: int, sep: str = ",") -> List[Tuple[int, int]]:
    """Split code[start:end] at separators outside any brackets or generics.

    After a top-level '=' the rest of the chunk is an expression, where '<'
    and '>' are comparisons rather than generic brackets.
    """
    spans: List[Tuple[int, int]] = []
    depth = 0
    angle = 0
    in_expr = False
    chunk_start = start
    i = start

    while i < end:
        ch = code[i]
        if ch in "([{":
            depth += 1
        elif ch in ")]}":
            depth -= 1
        elif in_expr:
            if ch == sep and depth == 0:
                spans.append((chunk_start, i))
                chunk_start = i + 1
                in_expr = False
        elif ch == "=" and depth == 0 and angle == 0:
            in_expr = True
        elif ch == "<":
            if code.startswith("<<", i):
                i += 2
                continue
            angle += 1
        elif ch == ">":
            if i > start and code[i - 1] == "-":
                pass
            elif code.startswith(">>", i) and angle < 2:
                i += 2
                continue
            elif angle > 0:
                angle -= 1
        elif ch == sep and depth == 0 and angle == 0:
            spans.append((chunk_start, i))
            chunk_start = i + 1
        i += 1

    spans.append((chunk_start, end))
    return spans


def parse_attribute(code: str, start: int) -> Attribute:
    m = ATTRIBUTE_START.match(code, start)
    if not m:
        raise StructuralError("expected attribute", start)
    open_bracket = m.end() - 1
    close = find_matching_bracket(code, open_bracket)

    i = skip_ws(code, m.end(), close)
    path_match = PATH_RE.match(code, i, close)
    if not path_match:
        raise StructuralError("expected attribute path", i)
    path = re.sub(r"\s+", "", path_match.group(0))

    attr = Attribute(path=path, start=start, end=close + 1)
    i = skip_ws(code, path_match.end(), close)
    if i < close and code[i] == "(":
        paren_close = find_matching_bracket(code, i)
        attr.args_start = i + 1
        attr.args_end = paren_close
    return attr


def parse_attribute_group(code: str, start: int) -> Tuple[List[Attribute], int]:
    attrs: List[Attribute] = []
    i = start
    while True:
        i = skip_ws(code, i)
        if not ATTRIBUTE_START.match(code, i):
            return attrs, i
        attr = parse_attribute(code, i)
        attrs.append(attr)
        i = attr.end


def derive_entries(code: str, attr: Attribute) -> List[Tuple[int, int]]:
    if attr.path != "derive" or attr.args_start < 0:
        return []
    return [
        (s, e)
        for s, e in split_top_level(code, attr.args_start, attr.args_end)
        if code[s:e].strip()
    ]


def is_target_entry(entry: str) -> bool:
    return re.sub(r"\s+", "", entry).split("::")[-1] == DERIVE_NAME


def derives_target(code: str, attrs: Sequence[Attribute]) -> bool:
    for attr in attrs:
        for s, e in derive_entries(code, attr):
            if is_target_entry(code[s:e]):
                return True
    return False


def parse_handler_args(text: str, code: str, attr: Attribute) -> List[AttributeArg]:
    if attr.args_start < 0:
        if code[attr.start : attr.end].rstrip("] \t\n").endswith(ATTRIBUTE_NAME):
            return []
        raise ConfigurationError(
            f"expected #[{ATTRIBUTE_NAME}(key = \"value\", ...)]", attr.start
        )

    args: List[AttributeArg] = []
    for s, e in split_top_level(code, attr.args_start, attr.args_end):
        if not code[s:e].strip():
            continue
        m = HANDLER_ARG_RE.match(code, s, e)
        if not m:
            raise ConfigurationError(f"malformed {ATTRIBUTE_NAME} option", skip_ws(code, s, e))
        value = text[m.end() : e].strip() if m.group(2) else None
        if not m.group(2) and code[m.end() : e].strip():
            raise ConfigurationError(
                f"expected '=' after {ATTRIBUTE_NAME} option '{m.group(1)}'", m.end()
            )
        args.append(AttributeArg(key=m.group(1), value=value, index=m.start(1)))
    return args


def parse_tagged_union(text: str, code: str, attrs: List[Attribute], i: int) -> UnionDeclaration:
    item_start = skip_ws(code, i)
    i = item_start
    visibility = ""
    vis_match = VISIBILITY_RE.match(code, i)
    if vis_match:
        visibility = re.sub(r"\s+", "", vis_match.group(0))
        i = skip_ws(code, vis_match.end())

    keyword = IDENT_RE.match(code, i)
    if not keyword or keyword.group(0) != "enum":
        found = keyword.group(0) if keyword else code[i : i + 1] or "end of file"
        raise StructuralError(f"#[derive({DERIVE_NAME})] must be applied to an enum, found '{found}'", i)

    i = skip_ws(code, keyword.end())
    name_match = IDENT_RE.match(code, i)
    if not name_match:
        raise StructuralError("expected enum name", i)
    name = name_match.group(0)

    i = skip_ws(code, name_match.end())
    if code.startswith("<", i):
        raise StructuralError(f"generic enums are not supported: '{name}'", i)
    if re.match(r"where\b", code[i:]):
        raise StructuralError(f"where clauses are not supported: '{name}'", i)
    if i >= len(code) or code[i] != "{":
        raise StructuralError(f"expected '{{' to open enum '{name}'", i)

    open_brace = i
    close_brace = find_matching_bracket(code, open_brace)

    decl = UnionDeclaration(
        name=name,
        visibility=visibility,
        body=text[open_brace + 1 : close_brace],
        body_code=code[open_brace + 1 : close_brace],
        body_index=open_brace + 1,
        start=attrs[0].start,
        item_start=item_start,
        end=close_brace + 1,
        attribute_spans=list(attrs),
    )
    for attr in attrs:
        if attr.path == ATTRIBUTE_NAME:
            decl.attributes.extend(parse_handler_args(text, code, attr))
    return decl


def parse_all_unions(text: str) -> List[UnionDeclaration]:
    code = mask_source(text)
    unions: List[UnionDeclaration] = []
    consumed_until = -1

    for m in ATTRIBUTE_START.finditer(code):
        if m.start() < consumed_until:
            continue
        attrs, item_index = parse_attribute_group(code, m.start())
        consumed_until = item_index
        if not derives_target(code, attrs):
            continue
        decl = parse_tagged_union(text, code, attrs, item_index)
        unions.append(decl)
        consumed_until = decl.end

    return unions


# ---------------------------------------------------------------------------
# Configuration resolver
# ---------------------------------------------------------------------------


def unquote_string(literal: str) -> Optional[str]:
    m = RAW_STRING_LITERAL.match(literal)
    if m:
        return m.group(2)
    m = STRING_LITERAL.match(literal)
    if not m:
        return None
    return re.sub(r"\\(.)", lambda e: STRING_ESCAPES.get(e.group(1), e.group(0)), m.group(1), flags=re.DOTALL)


TYPE_TOKEN = re.compile(
    r"\s*(?:(?P<lifetime>'[A-Za-z_]\w*)|(?P<ident>(?:r#)?[A-Za-z_]\w*)|(?P<number>\d\w*)"
    r"|(?P<punct>::|->|[<>()\[\],&*;+!=?{}]))"
)


class TypeParser:
    """Recursive-descent recognizer for Rust type syntax."""

    def __init__(self, text: str) -> None:
        self.tokens: List[Tuple[str, str]] = []
        pos = 0
        stripped = text.rstrip()
        while pos < len(stripped):
            m = TYPE_TOKEN.match(stripped, pos)
            if not m:
                raise TypeSyntaxError(f"unexpected character {stripped[pos:].lstrip()[:1]!r}")
            kind = m.lastgroup or "punct"
            self.tokens.append((kind, m.group(kind)))
            pos = m.end()
        self.pos = 0

    def peek(self, offset: int = 0) -> Tuple[str, str]:
        if self.pos + offset < len(self.tokens):
            return self.tokens[self.pos + offset]
        return ("eof", "")

    def next(self) -> Tuple[str, str]:
        token = self.peek()
        if token[0] == "eof":
            raise TypeSyntaxError("unexpected end of type")
        self.pos += 1
        return token

    def accept(self, value: str) -> bool:
        if self.peek()[1] == value and self.peek()[0] != "eof":
            self.pos += 1
            return True
        return False

    def expect(self, value: str) -> None:
        if not self.accept(value):
            found = self.peek()[1] or "end of type"
            raise TypeSyntaxError(f"expected '{value}', found '{found}'")

    def parse(self) -> None:
        if not self.tokens:
            raise TypeSyntaxError("expected a type")
        self.parse_type()
        if self.peek()[0] != "eof":
            raise TypeSyntaxError(f"unexpected '{self.peek()[1]}'")

    def parse_type(self) -> None:
        kind, value = self.next()
        if value == "!":
            return
        if value == "(":
            self.parse_type_list(")")
            return
        if value == "[":
            self.parse_type()
            if self.accept(";"):
                self.parse_const()
            self.expect("]")
            return
        if value == "&":
            if self.peek()[0] == "lifetime":
                self.next()
            self.accept("mut")
            self.parse_type()
            return
        if value == "*":
            if not (self.accept("const") or self.accept("mut")):
                raise TypeSyntaxError("raw pointer needs 'const' or 'mut'")
            self.parse_type()
            return
        if kind == "ident" and value in ("dyn", "impl"):
            self.parse_bounds()
            return
        if kind == "ident" and value in ("fn", "unsafe"):
            self.pos -= 1
            self.parse_fn_pointer()
            return
        if value == "<":
            self.parse_type()
            if self.accept("as"):
                self.parse_path()
            self.expect(">")
            self.expect("::")
            self.parse_path()
            return
        if kind == "ident" or value == "::":
            if kind == "ident" and value in RUST_KEYWORDS and value not in ("Self", "crate", "self", "super"):
                raise TypeSyntaxError(f"unexpected keyword '{value}'")
            self.pos -= 1
            self.parse_path()
            return
        raise TypeSyntaxError(f"unexpected '{value}'")

    def parse_fn_pointer(self) -> None:
        self.accept("unsafe")
        self.expect("fn")
        self.expect("(")
        self.parse_type_list(")")
        if self.accept("->"):
            self.parse_type()

    def parse_type_list(self, close: str) -> None:
        if self.accept(close):
            return
        while True:
            self.parse_type()
            if self.accept(close):
                return
            self.expect(",")
            if self.accept(close):
                return

    def parse_const(self) -> None:
        kind, value = self.peek()
        if kind == "number":
            self.next()
            return
        if value == "{":
            depth = 0
            while True:
                _, value = self.next()
                if value == "{":
                    depth += 1
                elif value == "}":
                    depth -= 1
                    if depth == 0:
                        return
        self.parse_path()

    def parse_bounds(self) -> None:
        while True:
            self.accept("?")
            if self.peek()[0] == "lifetime":
                self.next()
            elif self.accept("("):
                self.parse_path()
                self.expect(")")
            else:
                self.parse_path()
            if not self.accept("+"):
                return

    def parse_path(self) -> None:
        self.accept("::")
        while True:
            kind, value = self.next()
            if kind != "ident":
                raise TypeSyntaxError(f"expected path segment, found '{value}'")
            if self.peek()[1] == "<" or (self.peek()[1] == "::" and self.peek(1)[1] == "<"):
                self.accept("::")
                self.expect("<")
                self.parse_generic_args()
            elif self.peek()[1] == "(":
                self.next()
                self.parse_type_list(")")
                if self.accept("->"):
                    self.parse_type()
                return
            if self.peek()[1] == "::" and self.peek(1)[0] == "ident":
                self.next()
                continue
            return

    def parse_generic_args(self) -> None:
        if self.accept(">"):
            return
        while True:
            kind, value = self.peek()
            if kind in ("lifetime", "number"):
                self.next()
            elif kind == "ident" and self.peek(1)[1] == "=":
                self.next()
                self.next()
                self.parse_type()
            elif value == "{":
                self.parse_const()
            else:
                self.parse_type()
            if self.accept(">"):
                return
            self.expect(",")
            if self.accept(">"):
                return


def parse_type(text: str) -> str:
    TypeParser(text).parse()
    return normalize_type(text)


def parse_identifier_option(key: str, value: str, index: int) -> str:
    ident = value.strip()
    if not IDENTIFIER.match(ident) or ident == "_":
        raise ConfigurationError(f"{ATTRIBUTE_NAME} option '{key}' is not a valid identifier: '{value}'", index)
    if strip_raw(ident) in UNRAWABLE:
        raise ConfigurationError(f"{ATTRIBUTE_NAME} option '{key}' cannot be '{ident}'", index)
    if ident in RUST_KEYWORDS:
        raise ConfigurationError(
            f"{ATTRIBUTE_NAME} option '{key}' value '{ident}' is a reserved keyword (use 'r#{ident}')",
            index,
        )
    return ident


def default_configuration(decl: UnionDeclaration) -> Configuration:
    name = strip_raw(decl.name)
    return Configuration(
        returns=UNIT_TYPE,
        trait_name=f"{name}Handler",
        method=f"handle_{name.lower()}",
    )


def resolve_configuration(decl: UnionDeclaration) -> Configuration:
    values: Dict[str, Tuple[str, int]] = {}
    for arg in decl.attributes:
        if arg.key not in CONFIG_KEYS:
            raise ConfigurationError(
                f"unknown {ATTRIBUTE_NAME} option '{arg.key}' (expected one of: {', '.join(CONFIG_KEYS)})",
                arg.index,
            )
        if arg.key in values:
            raise ConfigurationError(f"duplicate {ATTRIBUTE_NAME} option '{arg.key}'", arg.index)
        if arg.value is None:
            raise ConfigurationError(f"{ATTRIBUTE_NAME} option '{arg.key}' expects a string value", arg.index)
        literal = unquote_string(arg.value)
        if literal is None:
            raise ConfigurationError(
                f"{ATTRIBUTE_NAME} option '{arg.key}' expects a string literal, got {arg.value}",
                arg.index,
            )
        values[arg.key] = (literal, arg.index)

    config = default_configuration(decl)
    returns, trait_name, method = config.returns, config.trait_name, config.method
    if "returns" in values:
        literal, index = values["returns"]
        try:
            returns = parse_type(literal)
        except TypeSyntaxError as e:
            raise ConfigurationError(
                f"{ATTRIBUTE_NAME} option 'returns' is not a valid type '{literal}': {e}", index
            ) from e
        if SELF_TYPE.search(returns):
            raise ConfigurationError(
                f"{ATTRIBUTE_NAME} option 'returns' cannot mention 'Self': it would name the "
                f"handler in the trait but the enum in the dispatcher ('{literal}')",
                index,
            )
    if "trait_name" in values:
        trait_name = parse_identifier_option("trait_name", *values["trait_name"])
    if "method" in values:
        method = parse_identifier_option("method", *values["method"])

    return Configuration(returns=returns, trait_name=trait_name, method=method)


# ---------------------------------------------------------------------------
# Variant extractor
# ---------------------------------------------------------------------------


def skip_outer_attributes(code: str, i: int, end: int) -> int:
    while True:
        i = skip_ws(code, i, end)
        m = ATTRIBUTE_START.match(code, i, end)
        if not m:
            return i
        i = find_matching_bracket(code, m.end() - 1) + 1


def _split_entries(code: str, start: int, end: int, offset: int, what: str) -> List[Tuple[int, int]]:
    spans = split_top_level(code, start, end)
    entries: List[Tuple[int, int]] = []
    for n, (s, e) in enumerate(spans):
        s = skip_outer_attributes(code, s, e)
        if code[s:e].strip():
            entries.append((s, e))
        elif n != len(spans) - 1:
            raise StructuralError(f"expected {what} before ','", offset + e)
    return entries


def parse_named_fields(text: str, code: str, start: int, end: int, offset: int) -> List[FieldDeclaration]:
    fields: List[FieldDeclaration] = []
    for s, e in _split_entries(code, start, end, offset, "field"):
        m = FIELD_HEAD_RE.match(code, s, e)
        if not m:
            raise StructuralError("expected '<name>: <type>' field declaration", offset + s)
        type_name = normalize_type(text[m.end() : e])
        if not type_name:
            raise StructuralError(f"missing type for field '{m.group(1)}'", offset + m.end())
        fields.append(FieldDeclaration(name=m.group(1), type_name=type_name, index=offset + m.start(1)))
    return fields


def parse_positional_fields(text: str, code: str, start: int, end: int, offset: int) -> List[FieldDeclaration]:
    return [
        FieldDeclaration(name=None, type_name=normalize_type(text[s:e]), index=offset + s)
        for s, e in _split_entries(code, start, end, offset, "field type")
    ]


def parse_variant(text: str, code: str, start: int, end: int, offset: int) -> VariantDeclaration:
    m = IDENT_RE.match(code, start, end)
    if not m:
        raise StructuralError("expected variant name", offset + start)
    name = m.group(0)
    index = offset + start

    i = skip_ws(code, m.end(), end)
    if i >= end or code[i] == "=":
        return VariantDeclaration(name=name, kind="unit", index=index)

    if code[i] not in "{(":
        raise StructuralError(f"unexpected tokens after variant '{name}'", offset + i)

    close = find_matching_bracket(code, i)
    tail = code[close + 1 : end].strip()
    if tail and not tail.startswith("="):
        raise StructuralError(f"unexpected tokens after variant '{name}'", offset + close + 1)

    if code[i] == "{":
        fields = parse_named_fields(text, code, i + 1, close, offset)
        return VariantDeclaration(name=name, kind="named", fields=fields, index=index)
    fields = parse_positional_fields(text, code, i + 1, close, offset)
    return VariantDeclaration(name=name, kind="positional", fields=fields, index=index)


def extract_variants(decl: UnionDeclaration) -> List[VariantDeclaration]:
    code = decl.body_code
    return [
        parse_variant(decl.body, code, s, e, decl.body_index)
        for s, e in _split_entries(code, 0, len(code), decl.body_index, "variant")
    ]


# ---------------------------------------------------------------------------
# Shape validator
# ---------------------------------------------------------------------------


def handler_method_name(variant_name: str) -> str:
    name = strip_raw(variant_name).lower()
    if name in RUST_KEYWORDS and name not in UNRAWABLE:
        return f"r#{name}"
    return name


def validate_variants(
    decl: UnionDeclaration, variants: Sequence[VariantDeclaration], config: Configuration
) -> None:
    if not variants:
        raise ShapeError(f"enum '{decl.name}' has no variants; cannot generate a handler trait", decl.item_start)

    for variant in variants:
        if variant.kind == "positional":
            raise ShapeError(
                f"tuple-like variant '{decl.name}::{variant.name}' is not supported; use named fields",
                variant.index,
            )

    by_method: Dict[str, List[VariantDeclaration]] = {}
    for variant in variants:
        by_method.setdefault(strip_raw(handler_method_name(variant.name)), []).append(variant)
    for method, group in by_method.items():
        if len(group) > 1:
            names = ", ".join(f"'{v.name}'" for v in group)
            raise ShapeError(
                f"variants {names} of enum '{decl.name}' collide on handler method '{method}'",
                group[1].index,
            )

    for variant in variants:
        if strip_raw(variant.name).lower() in UNRAWABLE:
            raise ShapeError(
                f"variant '{decl.name}::{variant.name}' maps to reserved method name "
                f"'{strip_raw(variant.name).lower()}'",
                variant.index,
            )

    if strip_raw(config.trait_name) == strip_raw(decl.name):
        raise ConfigurationError(
            f"handler trait name '{config.trait_name}' collides with the enum it is generated for",
            decl.start,
        )


# ---------------------------------------------------------------------------
# Interface and dispatcher generators
# ---------------------------------------------------------------------------


def method_signatures(
    decl: UnionDeclaration, variants: Sequence[VariantDeclaration], config: Configuration
) -> List[MethodSignature]:
    # Inside the trait `Self` is the implementor, so field types spell out the enum.
    return [
        MethodSignature(
            name=handler_method_name(v.name),
            parameters=[
                dataclasses.replace(f, type_name=SELF_TYPE.sub(decl.name, f.type_name)) for f in v.fields
            ],
            returns=config.returns,
        )
        for v in variants
    ]


def return_suffix(returns: str) -> str:
    if re.sub(r"\s+", "", returns) == UNIT_TYPE:
        return ""
    return f" -> {returns}"


def _with_visibility(visibility: str, item: str) -> str:
    return f"{visibility} {item}" if visibility else item


def render_interface(decl: UnionDeclaration, signatures: Sequence[MethodSignature], config: Configuration) -> str:
    lines: List[str] = []
    lines.append(_with_visibility(decl.visibility, f"trait {config.trait_name} {{"))
    for sig in signatures:
        params = ["&self"] + [f"{p.name}: {p.type_name}" for p in sig.parameters]
        lines.append(f"    fn {sig.name}({', '.join(params)}){return_suffix(sig.returns)};")
    lines.append("}")
    return "\n".join(lines)


def reserve_name(base: str, used: set[str]) -> str:
    candidate = base
    suffix = 2
    while candidate in used:
        candidate = f"{base}_{suffix}"
        suffix += 1
    return candidate


def render_dispatcher(
    decl: UnionDeclaration,
    variants: Sequence[VariantDeclaration],
    signatures: Sequence[MethodSignature],
    config: Configuration,
) -> str:
    field_names = {strip_raw(f.name) for v in variants for f in v.fields if f.name}
    handler = reserve_name("handler", field_names)
    taken_types = set(re.findall(r"[A-Za-z_]\w*", config.returns))
    taken_types.update((strip_raw(decl.name), strip_raw(config.trait_name)))
    type_param = reserve_name("H", taken_types)

    header = (
        f"fn {config.method}<{type_param}: {config.trait_name} + ?Sized>"
        f"(self, {handler}: &{type_param}){return_suffix(config.returns)} {{"
    )

    lines: List[str] = []
    lines.append(f"impl {decl.name} {{")
    lines.append("    " + _with_visibility(decl.visibility, header))
    lines.append("        match self {")
    for variant, sig in zip(variants, signatures):
        names = [f.name for f in variant.fields if f.name]
        if variant.kind == "unit":
            pattern = f"{decl.name}::{variant.name}"
        elif names:
            pattern = f"{decl.name}::{variant.name} {{ {', '.join(names)} }}"
        else:
            pattern = f"{decl.name}::{variant.name} {{}}"
        lines.append(f"            {pattern} => {handler}.{sig.name}({', '.join(names)}),")
    lines.append("        }")
    lines.append("    }")
    lines.append("}")
    return "\n".join(lines)


def assemble_fragment(interface: str, dispatcher: str) -> GeneratedFragment:
    return GeneratedFragment(interface=interface, dispatcher=dispatcher)


def generate_fragment(decl: UnionDeclaration) -> GeneratedFragment:
    config = resolve_configuration(decl)
    variants = extract_variants(decl)
    validate_variants(decl, variants, config)
    signatures = method_signatures(decl, variants, config)
    interface = render_interface(decl, signatures, config)
    dispatcher = render_dispatcher(decl, variants, signatures, config)
    return assemble_fragment(interface, dispatcher)


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------


def rewrite_attribute(text: str, code: str, attr: Attribute) -> Optional[str]:
    if attr.path == ATTRIBUTE_NAME:
        return None
    if attr.path != "derive":
        return text[attr.start : attr.end]

    kept = [normalize_type(text[s:e]) for s, e in derive_entries(code, attr) if not is_target_entry(code[s:e])]
    if not kept:
        return None
    return f"#[derive({', '.join(kept)})]"


def render_union(text: str, code: str, decl: UnionDeclaration, fragment: GeneratedFragment) -> str:
    pieces: List[str] = []
    cursor = decl.start
    for attr in decl.attribute_spans:
        pieces.append(text[cursor : attr.start])
        replacement = rewrite_attribute(text, code, attr)
        cursor = attr.end
        if replacement is None:
            cursor = DROPPED_LINE_TAIL.match(text, cursor).end()
        else:
            pieces.append(replacement)
    pieces.append(text[cursor : decl.end])

    line_start = text.rfind("\n", 0, decl.start) + 1
    indent = text[line_start : decl.start]
    if indent.strip():
        indent = ""
    generated = textwrap.indent(fragment.text.rstrip("\n"), indent)
    return "".join(pieces) + "\n\n" + generated


def apply_substitutions(source: str, unions: Sequence[UnionDeclaration], fragments: Sequence[GeneratedFragment]) -> str:
    pieces: List[str] = []
    cursor = 0
    code = mask_source(source)

    for decl, fragment in zip(unions, fragments):
        pieces.append(source[cursor : decl.start])
        pieces.append(render_union(source, code, decl, fragment))
        cursor = decl.end

    pieces.append(source[cursor:])
    return "".join(pieces)


def generate_source(source_text: str) -> str:
    unions = parse_all_unions(source_text)
    fragments = [generate_fragment(decl) for decl in unions]
    return apply_substitutions(source_text, unions, fragments)


def compute_file_digest(source_bytes: bytes) -> str:
    h = hashlib.sha256()
    h.update(GENERATOR_VERSION.encode("utf-8"))
    h.update(b"\x00")
    h.update(FORMAT_VERSION.encode("utf-8"))
    h.update(b"\x00")
    h.update(source_bytes)
    return h.hexdigest()


def render_file(source_path: pathlib.Path, source_text: str, source_bytes: bytes) -> str:
    transformed = generate_source(source_text)
    digest = compute_file_digest(source_bytes)
    source_label = str(source_path)
    try:
        source_label = str(source_path.resolve().relative_to(pathlib.Path.cwd().resolve()))
    except ValueError:
        source_label = str(source_path.resolve())

    meta = (
        "// handlergen-generated\n"
        f"// source: {source_label}\n"
        f"// generator_version: {GENERATOR_VERSION}\n"
        f"// format_version: {FORMAT_VERSION}\n"
        f"// digest: {digest}\n\n"
    )
    return meta + transformed


def extract_existing_digest(text: str) -> str | None:
    m = DIGEST_PATTERN.search(text)
    if not m:
        return None
    return m.group(1)


def run(args: argparse.Namespace) -> int:
    in_path = pathlib.Path(args.input)
    out_path = pathlib.Path(args.output)

    if not in_path.exists():
        print(f"error: input file does not exist: {in_path}", file=sys.stderr)
        return 1

    source_bytes = in_path.read_bytes()
    try:
        source_text = source_bytes.decode("utf-8")
    except UnicodeDecodeError as e:
        print(f"{in_path}: error: input is not valid UTF-8 ({e.reason} at byte {e.start})", file=sys.stderr)
        return 1

    try:
        rendered = render_file(in_path, source_text, source_bytes)
    except GenerationError as e:
        fail(in_path, source_text, e)
        return 1

    if args.check:
        if not out_path.exists():
            print(f"{out_path} is missing (run generator)", file=sys.stderr)
            return 1
        existing = out_path.read_text(encoding="utf-8")
        if existing != rendered:
            print(f"{out_path} is out of date (run generator)", file=sys.stderr)
            return 1
        print(f"up-to-date: {out_path}")
        return 0

    if out_path.exists():
        existing = out_path.read_text(encoding="utf-8")
        old_digest = extract_existing_digest(existing)
        new_digest = extract_existing_digest(rendered)
        if old_digest and new_digest and old_digest == new_digest:
            print(f"unchanged: {out_path}")
            return 0
        if existing == rendered:
            print(f"unchanged: {out_path}")
            return 0

    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(rendered, encoding="utf-8")
    print(f"generated: {out_path}")
    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate enum handler traits from .rs.handler sources")
    parser.add_argument("--in", dest="input", required=True, help="Input .rs.handler file")
    parser.add_argument("--out", dest="output", required=True, help="Output generated Rust source")
    parser.add_argument("--check", action="store_true", help="Check output is up to date")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    return run(build_arg_parser().parse_args(argv))


if __name__ == "__main__":
    raise SystemExit(main())

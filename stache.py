"""
Logic-less {{mustache}} templates.

Supported:
- Variables: {{name}} (escaped), {{{name}}} and {{&name}} (unescaped)
- Dotted names: {{person.full_name}}, plus {{.}} for the current view
- Sections: {{#items}} ... {{/items}} (sequences/mappings/objects/lambdas/truthy)
- Inverted sections: {{^items}} ... {{/items}}
- Comments: {{! comment }}
- Partials: {{> partial}} (from a mapping or a lazy loader callable)
- Set delimiters: {{=<% %>=}}

Templates are parsed into a token tree and compiled into reusable render
functions that a Writer caches by template string.
"""
from __future__ import annotations

import inspect
import numbers
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

__version__ = "0.7.0"

# Default delimiters used by parse() when none are given.
tags: Tuple[str, str] = ("{{", "}}")

Delimiters = Union[str, Sequence]
RenderFn = Callable[..., str]
PartialLoader = Callable[[str], Optional[str]]

# -----------------------------
# Escaping
# -----------------------------
def escape_html(s: str) -> str:
    return (
        str(s).replace("&", "&amp;")
         .replace("<", "&lt;")
         .replace(">", "&gt;")
         .replace('"', "&quot;")
         .replace("'", "&#39;")
         .replace("/", "&#x2F;")
    )

# Rebind to change how {{name}} output is escaped by every Writer
# that was not given its own escape function.
escape: Callable[[str], str] = escape_html

# -----------------------------
# Errors
# -----------------------------
class TemplateSyntaxError(ValueError):
    """Raised by parse() when a template cannot be tokenized or nested."""


class MalformedDelimiters(TemplateSyntaxError):
    def __init__(self, tags: Sequence):
        self.tags = list(tags)
        super().__init__("Invalid tags: " + " ".join(str(t) for t in self.tags))


class UnclosedTag(TemplateSyntaxError):
    def __init__(self, pos: int):
        self.pos = pos
        super().__init__(f"Unclosed tag at {pos}")


class UnopenedSection(TemplateSyntaxError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unopened section: {name}")


class UnclosedSection(TemplateSyntaxError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unclosed section: {name}")

# -----------------------------
# Scanner
# -----------------------------
def _as_pattern(pattern: Union[str, re.Pattern]) -> re.Pattern:
    return re.compile(pattern) if isinstance(pattern, str) else pattern


class Scanner:
    """A cursor over an immutable template string."""

    def __init__(self, string: str):
        self.string = string
        self.pos = 0

    def at_end(self) -> bool:
        return self.pos >= len(self.string)

    def consume_matching(self, pattern: Union[str, re.Pattern]) -> str:
        """Match `pattern` exactly at the cursor.

        Returns the matched text and advances past it, or returns "" and
        leaves the cursor where it was.
        """
        m = _as_pattern(pattern).match(self.string, self.pos)
        if not m:
            return ""
        self.pos = m.end()
        return m.group(0)

    def consume_until_matching(self, pattern: Union[str, re.Pattern]) -> str:
        """Skip ahead to the next match of `pattern` (or to the end).

        Returns the skipped text.
        """
        m = _as_pattern(pattern).search(self.string, self.pos)
        end = m.start() if m else len(self.string)
        skipped = self.string[self.pos:end]
        self.pos = end
        return skipped

# -----------------------------
# Tokens
# -----------------------------
TEXT = "text"
NAME = "name"
UNESCAPED = "&"
SECTION = "#"
INVERTED = "^"
CLOSE = "/"
PARTIAL = ">"
DELIMITERS = "="
COMMENT = "!"


@dataclass
class Token:
    kind: str
    value: str
    start: int
    end: int
    # Sections and inverted sections only.
    children: Optional[List["Token"]] = None
    close: Optional[int] = None  # offset of the matching {{/name}} tag

# -----------------------------
# Parsing
# -----------------------------
_WHITE_RE = re.compile(r"\s*")
_SPACE_RE = re.compile(r"\s+")
_EQ_RE = re.compile(r"\s*=")
_CURLY_RE = re.compile(r"\s*\}")
_TAG_TYPE_RE = re.compile(r"#|\^|/|>|\{|&|=|!")


def _split_delimiters(text: str) -> List[str]:
    return _SPACE_RE.split(text.strip())


def _tag_patterns(delimiters: Delimiters) -> Tuple[re.Pattern, re.Pattern, str]:
    if isinstance(delimiters, str):
        delimiters = _split_delimiters(delimiters)
    delimiters = list(delimiters)
    if (
        len(delimiters) != 2
        or not all(isinstance(d, str) and d for d in delimiters)
        or delimiters[0] == delimiters[1]
    ):
        raise MalformedDelimiters(delimiters)
    opening, closing = delimiters
    return (
        re.compile(re.escape(opening) + r"\s*"),
        re.compile(r"\s*" + re.escape(closing)),
        closing,
    )


def _squash_tokens(tokens: List[Token]) -> List[Token]:
    squashed: List[Token] = []
    for tok in tokens:
        last = squashed[-1] if squashed else None
        if last is not None and last.kind == TEXT and tok.kind == TEXT:
            last.value += tok.value
            last.end = tok.end
        else:
            squashed.append(tok)
    return squashed


def _nest_tokens(tokens: List[Token]) -> List[Token]:
    tree: List[Token] = []
    collector = tree
    sections: List[Token] = []

    for tok in tokens:
        if tok.kind in (SECTION, INVERTED):
            tok.children = []
            collector.append(tok)
            sections.append(tok)
            collector = tok.children
        elif tok.kind == CLOSE:
            if not sections:
                raise UnopenedSection(tok.value)
            section = sections.pop()
            if section.value != tok.value:
                raise UnclosedSection(section.value)
            section.close = tok.start
            collector = sections[-1].children if sections else tree
        else:
            collector.append(tok)

    if sections:
        raise UnclosedSection(sections[-1].value)
    return tree


def parse(template: str, delimiters: Optional[Delimiters] = None) -> List[Token]:
    """Break `template` into a tree of tokens.

    `delimiters` is a pair of opening/closing tags such as ("<%", "%>") or
    the string "<% %>"; it defaults to the module-level `tags`. Section
    tokens carry their nested tokens in `children`.
    """
    open_re, close_re, closing = _tag_patterns(tags if delimiters is None else delimiters)
    scanner = Scanner(template)

    tokens: List[Token] = []
    spaces: List[int] = []  # indices of whitespace tokens on the current line
    has_tag = False         # structural tag on the current line?
    non_space = False       # anything visible on the current line?

    def strip_space() -> None:
        # Drop the whitespace of a line that holds only structural tags.
        nonlocal spaces, has_tag, non_space
        if has_tag and not non_space:
            for idx in reversed(spaces):
                del tokens[idx]
        spaces = []
        has_tag = False
        non_space = False

    while not scanner.at_end():
        start = scanner.pos
        for ch in scanner.consume_until_matching(open_re):
            if ch.isspace():
                spaces.append(len(tokens))
            else:
                non_space = True
            tokens.append(Token(TEXT, ch, start, start + 1))
            start += 1
            if ch == "\n":
                strip_space()

        start = scanner.pos
        if not scanner.consume_matching(open_re):
            break

        kind = scanner.consume_matching(_TAG_TYPE_RE) or NAME
        scanner.consume_matching(_WHITE_RE)

        if kind == DELIMITERS:
            value = scanner.consume_until_matching(_EQ_RE)
            scanner.consume_matching(_EQ_RE)
            scanner.consume_until_matching(close_re)
        elif kind == "{":
            triple_close = re.compile(r"\s*" + re.escape("}" + closing))
            value = scanner.consume_until_matching(triple_close)
            scanner.consume_matching(_CURLY_RE)
            scanner.consume_until_matching(close_re)
            kind = UNESCAPED
        else:
            value = scanner.consume_until_matching(close_re)

        if not scanner.consume_matching(close_re):
            raise UnclosedTag(scanner.pos)

        tokens.append(Token(kind, value, start, scanner.pos))

        if kind in (NAME, UNESCAPED):
            non_space = True
        else:
            has_tag = True

        # New delimiters take effect from the next tag on.
        if kind == DELIMITERS:
            open_re, close_re, closing = _tag_patterns(_split_delimiters(value))

    strip_space()
    return _nest_tokens(_squash_tokens(tokens))

# -----------------------------
# View data
# -----------------------------
class ViewKind(Enum):
    NULL = "null"
    SCALAR = "scalar"
    SEQUENCE = "sequence"
    MAPPING = "mapping"
    CALLABLE = "callable"


_SCALARS = (str, bytes, bytearray, numbers.Number)


def classify(value: Any) -> ViewKind:
    if value is None:
        return ViewKind.NULL
    if isinstance(value, _SCALARS):
        return ViewKind.SCALAR
    if isinstance(value, Mapping):
        return ViewKind.MAPPING
    if isinstance(value, Sequence):
        return ViewKind.SEQUENCE
    if callable(value):
        return ViewKind.CALLABLE
    # Plain objects expose attributes the way mappings expose keys.
    return ViewKind.MAPPING


def _required_positionals(fn: Callable) -> int:
    try:
        params = inspect.signature(fn).parameters.values()
    except (TypeError, ValueError):
        return 0
    return sum(
        1
        for p in params
        if p.default is p.empty and p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
    )


def _takes_arguments(fn: Callable) -> bool:
    return _required_positionals(fn) > 0


def _get(view: Any, key: str) -> Any:
    kind = classify(view)
    if kind is ViewKind.MAPPING:
        if isinstance(view, Mapping):
            return view.get(key)
        if key.startswith("_"):
            return None
        return getattr(view, key, None)
    if kind is ViewKind.SEQUENCE and key.isascii() and key.isdigit():
        idx = int(key)
        return view[idx] if idx < len(view) else None
    return None


def _resolve(view: Any, name: str) -> Any:
    if "." not in name:
        return _get(view, name)
    value = view
    for part in name.split("."):
        value = _get(value, part)
        if value is None:
            return None
    return value

# -----------------------------
# Context
# -----------------------------
class Context:
    """One level of view data, chained to the enclosing levels for lookups."""

    def __init__(self, view: Any, parent: Optional["Context"] = None):
        self.view = view
        self.parent = parent
        self.clear_cache()

    @classmethod
    def make(cls, view: Any) -> "Context":
        return view if isinstance(view, Context) else cls(view)

    def clear_cache(self) -> None:
        self._cache: Dict[str, Any] = {}

    def push(self, view: Any) -> "Context":
        return Context(view, self)

    def lookup(self, name: str) -> Any:
        """Resolve `name` here, falling back to parent contexts.

        A callable that needs no arguments is called and its result is
        what gets memoized for this context.
        """
        if name in self._cache:
            return self._cache[name]

        if name == ".":
            value = self.view
        else:
            context: Optional[Context] = self
            value = None
            while context is not None:
                value = _resolve(context.view, name)
                if value is not None:
                    break
                context = context.parent

        if callable(value) and not _takes_arguments(value):
            value = value()

        self._cache[name] = value
        return value

# -----------------------------
# Compiling
# -----------------------------
def _compile_tokens(tokens: List[Token]) -> RenderFn:
    """Compile `tokens` into a function of (writer, context, template)."""
    sub_renders: List[Optional[RenderFn]] = [None] * len(tokens)

    def sub_render(i: int, template: str) -> RenderFn:
        if sub_renders[i] is None:
            fn = _compile_tokens(tokens[i].children or [])

            def render_section(writer: Writer, context: Context) -> str:
                return fn(writer, context, template)

            sub_renders[i] = render_section
        return sub_renders[i]

    def render(writer: Writer, context: Context, template: str) -> str:
        out: List[str] = []
        for i, tok in enumerate(tokens):
            if tok.kind == TEXT:
                out.append(tok.value)
            elif tok.kind == NAME:
                out.append(writer._escaped(tok.value, context))
            elif tok.kind == UNESCAPED:
                out.append(writer._name(tok.value, context))
            elif tok.kind == SECTION:
                out.append(writer._section(tok, context, template, sub_render(i, template)))
            elif tok.kind == INVERTED:
                out.append(writer._inverted(tok.value, context, sub_render(i, template)))
            elif tok.kind == PARTIAL:
                out.append(writer._partial(tok.value, context))
        return "".join(out)

    return render

# -----------------------------
# Writer
# -----------------------------
class Writer:
    """Compiles templates and partials, caching them by template string."""

    def __init__(self, escape: Optional[Callable[[str], str]] = None):
        self._escape = escape
        self._load_partial: Optional[PartialLoader] = None
        self.clear_cache()

    def clear_cache(self) -> None:
        self._cache: Dict[str, RenderFn] = {}
        self._partial_cache: Dict[str, RenderFn] = {}

    def compile(self, template: str, delimiters: Optional[Delimiters] = None) -> RenderFn:
        fn = self._cache.get(template)
        if fn is None:
            fn = self._cache[template] = self.compile_tokens(parse(template, delimiters), template)
        return fn

    def compile_partial(self, name: str, template: str, delimiters: Optional[Delimiters] = None) -> RenderFn:
        fn = self.compile(template, delimiters)
        self._partial_cache[name] = fn
        return fn

    def compile_tokens(self, tokens: List[Token], template: str) -> RenderFn:
        fn = _compile_tokens(tokens)

        def render(view: Any, partials: Union[Mapping, PartialLoader, None] = None) -> str:
            if partials:
                if callable(partials):
                    self._load_partial = partials
                else:
                    for name, partial in partials.items():
                        self.compile_partial(name, partial)
            return fn(self, Context.make(view), template)

        return render

    def render(self, template: str, view: Any, partials: Union[Mapping, PartialLoader, None] = None) -> str:
        return self.compile(template)(view, partials)

    def _section(self, token: Token, context: Context, template: str, callback: RenderFn) -> str:
        value = context.lookup(token.value)
        kind = classify(value)

        if kind is ViewKind.SEQUENCE:
            return "".join(callback(self, context.push(item)) for item in value)
        if kind is ViewKind.MAPPING:
            return callback(self, context.push(value)) if value else ""
        if kind is ViewKind.CALLABLE:
            def scoped_render(source: str) -> str:
                return self.render(source, context)

            # Raw section source, for lambdas that want the unrendered text.
            text = template[token.end:token.close]
            arity = _required_positionals(value)
            if arity == 1:
                result = value(text)
            elif arity == 2:
                result = value(text, scoped_render)
            else:
                result = value(context.view, text, scoped_render)
            return "" if result is None else str(result)
        if kind is ViewKind.SCALAR:
            return callback(self, context) if value else ""
        return ""

    def _inverted(self, name: str, context: Context, callback: RenderFn) -> str:
        value = context.lookup(name)
        # Empty sequences are falsy; a non-empty one is truthy even if its items are not.
        if not value:
            return callback(self, context)
        return ""

    def _partial(self, name: str, context: Context) -> str:
        if name not in self._partial_cache and self._load_partial is not None:
            template = self._load_partial(name)
            if template is not None:
                self.compile_partial(name, template)
        fn = self._partial_cache.get(name)
        return fn(context) if fn else ""

    def _name(self, name: str, context: Context) -> str:
        value = context.lookup(name)
        if callable(value):
            value = value(context.view)
        return "" if value is None else str(value)

    def _escaped(self, name: str, context: Context) -> str:
        return (self._escape or escape)(self._name(name, context))

# -----------------------------
# Module-level API (default writer)
# -----------------------------
default_writer = Writer()


def clear_cache() -> None:
    """Clear all cached templates and partials in the default writer."""
    default_writer.clear_cache()


def compile(template: str, delimiters: Optional[Delimiters] = None) -> RenderFn:
    return default_writer.compile(template, delimiters)


def compile_partial(name: str, template: str, delimiters: Optional[Delimiters] = None) -> RenderFn:
    return default_writer.compile_partial(name, template, delimiters)


def compile_tokens(tokens: List[Token], template: str) -> RenderFn:
    return default_writer.compile_tokens(tokens, template)


def render(template: str, view: Any, partials: Union[Mapping, PartialLoader, None] = None) -> str:
    return default_writer.render(template, view, partials)


def to_html(
    template: str,
    view: Any,
    partials: Union[Mapping, PartialLoader, None] = None,
    send: Optional[Callable[[str], Any]] = None,
) -> Optional[str]:
    # Older entry point: hands the result to `send` when one is given.
    result = render(template, view, partials)
    if callable(send):
        send(result)
        return None
    return result

"""
Command Templates - Render command template files into shell command lines.

Templates use a deliberately small EJS-style syntax:

- ``<%= key %>``  value interpolation, HTML-escaped
- ``<%- key %>``  raw value interpolation
- ``<% if (key) { %> ... <% } %>``  conditional block (``!key`` negates,
  ``} else {`` and ``} else if (key) {`` are accepted)
- ``<%# comment %>``  ignored
- ``<%%``  literal ``<%``

Only bare context keys are understood. Anything else in a tag is a syntax
error, so template files can never execute code.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping

from squad_mcp.exceptions import RenderError

_EXCERPT_CHARS = 100

_IDENT = r"[A-Za-z_$][\w$]*"
_OUTPUT_RE = re.compile(rf"^\s*({_IDENT})\s*;?\s*$")
_PATH_RE = re.compile(rf"^\s*{_IDENT}(\s*(\.|\?\.)\s*{_IDENT}|\s*\[[^\]]*\])+\s*;?\s*$")
_IF_RE = re.compile(rf"^if\s*\(\s*(!?)\s*({_IDENT})\s*\)\s*\{{$")
_ELSE_IF_RE = re.compile(rf"^\}}\s*else\s+if\s*\(\s*(!?)\s*({_IDENT})\s*\)\s*\{{$")
_ELSE_RE = re.compile(r"^\}\s*else\s*\{$")
_END_RE = re.compile(r"^\}\s*;?$")

_HTML_ESCAPES = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&#34;",
    "'": "&#39;",
}
_HTML_ESCAPE_RE = re.compile(r"[&<>\"']")


class TemplateSyntaxError(ValueError):
    """Raised by the template parser for malformed or unsupported tags."""


def escape_html(text: str) -> str:
    """Escape a value the same way ``<%= %>`` does."""
    return _HTML_ESCAPE_RE.sub(lambda m: _HTML_ESCAPES[m.group(0)], text)


def escape_for_double_quotes(text: str) -> str:
    """Escape text for inclusion inside a double-quoted shell argument.

    Backslash, ``$``, backtick and ``"`` are backslash-escaped, newlines become
    the two characters ``\\n`` and carriage returns are dropped.
    """
    return (
        text.replace("\\", "\\\\")
        .replace("$", "\\$")
        .replace("`", "\\`")
        .replace('"', '\\"')
        .replace("\r", "")
        .replace("\n", "\\n")
    )


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# ---------------------------------------------------------------------------
# Parse tree
# ---------------------------------------------------------------------------


@dataclass
class _Text:
    text: str


@dataclass
class _Output:
    key: str
    escape: bool


@dataclass
class _Branch:
    key: str | None  # None for a plain ``else``
    negate: bool = False
    body: list[Any] = field(default_factory=list)


@dataclass
class _If:
    branches: list[_Branch] = field(default_factory=list)


def _lex(template: str) -> list[tuple[str, str]]:
    """Split template text into ``(kind, payload)`` tokens.

    Kinds: ``text``, ``escaped``, ``raw``, ``code``. Comments and whitespace
    trimming markers are resolved here.
    """
    tokens: list[tuple[str, str]] = []
    pos = 0
    length = len(template)

    while pos < length:
        start = template.find("<%", pos)
        if start == -1:
            tokens.append(("text", template[pos:]))
            break

        if template.startswith("<%%", start):
            tokens.append(("text", template[pos:start] + "<%"))
            pos = start + 3
            continue

        end = template.find("%>", start + 2)
        if end == -1:
            raise TemplateSyntaxError('Could not find matching close tag for "<%".')

        leading = template[pos:start]
        inner = template[start + 2:end]
        marker = inner[:1]
        kind = "code"
        if marker == "=":
            kind, inner = "escaped", inner[1:]
        elif marker == "-":
            kind, inner = "raw", inner[1:]
        elif marker == "#":
            kind, inner = "comment", inner[1:]
        elif marker == "_":
            inner = inner[1:]
            leading = leading.rstrip(" \t")

        trim = ""
        if inner.endswith("-") or inner.endswith("_"):
            trim, inner = inner[-1], inner[:-1]

        if leading:
            tokens.append(("text", leading))
        if kind != "comment":
            tokens.append((kind, inner))

        pos = end + 2
        if trim == "-" and template.startswith("\n", pos):
            pos += 1
        elif trim == "-" and template.startswith("\r\n", pos):
            pos += 2
        elif trim == "_":
            while pos < length and template[pos] in " \t":
                pos += 1

    return tokens


def _parse_expression(source: str) -> str:
    match = _OUTPUT_RE.match(source)
    if match:
        return match.group(1)
    if _PATH_RE.match(source):
        raise TemplateSyntaxError(f"Property paths are not supported: {source.strip()}")
    raise TemplateSyntaxError(f"Unsupported expression: {source.strip()}")


def _parse(template: str) -> list[Any]:
    root: list[Any] = []
    # Each frame: (node list being filled, owning _If or None)
    stack: list[tuple[list[Any], _If | None]] = [(root, None)]

    for kind, payload in _lex(template):
        current = stack[-1][0]
        if kind == "text":
            current.append(_Text(payload))
            continue
        if kind in ("escaped", "raw"):
            current.append(_Output(_parse_expression(payload), escape=kind == "escaped"))
            continue

        statement = payload.strip()
        if not statement:
            continue

        match = _IF_RE.match(statement)
        if match:
            branch = _Branch(key=match.group(2), negate=bool(match.group(1)))
            node = _If(branches=[branch])
            current.append(node)
            stack.append((branch.body, node))
            continue

        owner = stack[-1][1]
        match = _ELSE_IF_RE.match(statement)
        if match or _ELSE_RE.match(statement):
            if owner is None or owner.branches[-1].key is None:
                raise TemplateSyntaxError(f"Unexpected else: {statement}")
            branch = (
                _Branch(key=match.group(2), negate=bool(match.group(1)))
                if match
                else _Branch(key=None)
            )
            owner.branches.append(branch)
            stack[-1] = (branch.body, owner)
            continue

        if _END_RE.match(statement):
            if owner is None:
                raise TemplateSyntaxError("Unexpected closing brace")
            stack.pop()
            continue

        raise TemplateSyntaxError(f"Unsupported statement: {statement}")

    if len(stack) > 1:
        raise TemplateSyntaxError("Unterminated if block")
    return root


def _evaluate(nodes: list[Any], context: Mapping[str, Any], out: list[str]) -> None:
    for node in nodes:
        if isinstance(node, _Text):
            out.append(node.text)
        elif isinstance(node, _Output):
            text = _to_text(context.get(node.key))
            out.append(escape_html(text) if node.escape else text)
        else:
            for branch in node.branches:
                if branch.key is None or bool(context.get(branch.key)) != branch.negate:
                    _evaluate(branch.body, context, out)
                    break


def split_args(rendered: str) -> list[str]:
    """Split a rendered command line into arguments.

    Whitespace outside quotes separates arguments. A ``"`` or ``'`` opens a
    quoted run that ends at the same quote character; the quotes are dropped
    and everything inside is kept verbatim. An unmatched quote runs to the end
    of the string.
    """
    args: list[str] = []
    current: list[str] = []
    quote: str | None = None

    def flush() -> None:
        token = "".join(current).strip()
        if token:
            args.append(token)
        current.clear()

    for char in rendered:
        if quote is None:
            if char.isspace():
                flush()
            elif char in ("'", '"'):
                quote = char
            else:
                current.append(char)
        elif char == quote:
            quote = None
        else:
            current.append(char)

    flush()
    return args


@dataclass
class RenderedCommand:
    """A rendered template: the shell text and its argument split."""

    text: str
    args: list[str]

    @property
    def is_empty(self) -> bool:
        return not self.args

    @property
    def head(self) -> str:
        """First argument, used when logging which program is launched."""
        return self.args[0] if self.args else ""


class TemplateRenderer:
    """Render command templates against a context mapping.

    Usage:
        renderer = TemplateRenderer()
        args = renderer.render('agent "<%- prompt %>"', {"prompt": "hi"})
        # ['agent', 'hi']
    """

    def render_text(self, template: str, context: Mapping[str, Any]) -> str:
        """Evaluate interpolations and conditional blocks."""
        try:
            nodes = _parse(template)
            out: list[str] = []
            _evaluate(nodes, context, out)
        except TemplateSyntaxError as e:
            excerpt = template[:_EXCERPT_CHARS]
            raise RenderError(
                f"Template rendering failed: {e}. Template: {excerpt}...",
                template_excerpt=excerpt,
                original_error=e,
            ) from e
        return "".join(out)

    def render(self, template: str, context: Mapping[str, Any]) -> list[str]:
        """Render a template and split it into arguments."""
        return split_args(self.render_text(template, context))

    def render_command(self, template: str, context: Mapping[str, Any]) -> RenderedCommand:
        """Render a template, keeping both the shell text and its arguments."""
        text = self.render_text(template, context)
        return RenderedCommand(text=text.strip(), args=split_args(text))

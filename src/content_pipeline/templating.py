"""Parser and renderer for the ``{{ }}`` template micro-language.

Supported tags:

- ``{{name}}`` substitutes a variable (missing values render as ``""``).
- ``{{customer.name}}`` walks into a mapping or object one dotted step at a time.
- ``{{#if name}}...{{/if}}`` renders its body when ``name`` is truthy.
- ``{{#each name}}...{{/each}}`` renders its body once per item and binds the
  item to ``{{this}}``; names inside the loop resolve on dict items first.

A block tag that is alone on its line removes the whole line from the output,
so templates can keep one tag per line without leaving blank lines behind.
Unmatched or mismatched block tags raise ``TemplateSyntaxError``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Union

TAG_PATTERN = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
BLOCK_KEYWORDS = ("if", "each")
LOOP_ITEM = "this"


class TemplateSyntaxError(ValueError):
    """Raised when a template's block tags are unbalanced or malformed."""

    def __init__(self, message: str, *, position: int | None = None):
        super().__init__(message)
        self.position = position


# --- Tags and nodes -------------------------------------------------------


@dataclass(frozen=True)
class Tag:
    kind: str  # "var", "open" or "close"
    name: str
    keyword: str | None
    start: int
    end: int
    depth: int


@dataclass
class TextNode:
    value: str


@dataclass
class VarNode:
    name: str


@dataclass
class BlockNode:
    keyword: str
    name: str
    children: List["Node"] = field(default_factory=list)


Node = Union[TextNode, VarNode, BlockNode]


def _classify(inner: str, position: int) -> tuple[str, str | None, str]:
    """Return (kind, keyword, name) for the text between ``{{`` and ``}}``."""
    stripped = inner.strip()
    if stripped.startswith("#"):
        parts = stripped[1:].split()
        keyword = parts[0] if parts else ""
        if keyword not in BLOCK_KEYWORDS:
            raise TemplateSyntaxError(
                f"Unknown block tag '{{{{#{keyword}}}}}' at offset {position}.",
                position=position,
            )
        if len(parts) < 2:
            raise TemplateSyntaxError(
                f"Block tag '{{{{#{keyword}}}}}' at offset {position} is missing a variable.",
                position=position,
            )
        return "open", keyword, parts[1]
    if stripped.startswith("/"):
        keyword = stripped[1:].strip()
        if keyword not in BLOCK_KEYWORDS:
            raise TemplateSyntaxError(
                f"Unknown closing tag '{{{{/{keyword}}}}}' at offset {position}.",
                position=position,
            )
        return "close", keyword, ""
    return "var", None, stripped


def scan_tags(text: str, errors: Optional[List[str]] = None) -> List[Tag]:
    """
    Return every tag in ``text`` with its nesting depth.

    When ``errors`` is given, problems are appended to it and scanning continues;
    otherwise the first problem raises ``TemplateSyntaxError``.
    """

    def _fail(message: str, position: int) -> None:
        if errors is None:
            raise TemplateSyntaxError(message, position=position)
        errors.append(message)

    tags: List[Tag] = []
    stack: List[Tag] = []
    for match in TAG_PATTERN.finditer(text):
        try:
            kind, keyword, name = _classify(match.group(1), match.start())
        except TemplateSyntaxError as exc:
            _fail(str(exc), match.start())
            continue

        if kind == "open":
            tag = Tag(kind, name, keyword, match.start(), match.end(), len(stack) + 1)
            stack.append(tag)
        elif kind == "close":
            if not stack:
                _fail(
                    f"Unmatched '{{{{/{keyword}}}}}' at offset {match.start()}.",
                    match.start(),
                )
                continue
            opener = stack[-1]
            if opener.keyword != keyword:
                _fail(
                    f"'{{{{/{keyword}}}}}' at offset {match.start()} closes "
                    f"'{{{{#{opener.keyword} {opener.name}}}}}'.",
                    match.start(),
                )
                continue
            stack.pop()
            tag = Tag(kind, opener.name, keyword, match.start(), match.end(), opener.depth)
        else:
            tag = Tag(kind, name, None, match.start(), match.end(), len(stack))
        tags.append(tag)

    for opener in stack:
        _fail(
            f"Unclosed '{{{{#{opener.keyword} {opener.name}}}}}' at offset {opener.start}.",
            opener.start,
        )
    return tags


def syntax_errors(text: str) -> List[str]:
    """Collect every block-balance problem in ``text`` without raising."""
    errors: List[str] = []
    scan_tags(text, errors)
    return errors


def find_tags(text: str) -> List[Tag]:
    """Like ``scan_tags`` but never raises; unbalanced tags are simply skipped."""
    return scan_tags(text, errors=[])


def root_name(name: str) -> str:
    """The variable a dotted path starts from: ``customer`` for ``customer.name``."""
    return name.split(".", 1)[0]


def used_variables(text: str) -> List[str]:
    """Return variable names referenced by ``text`` in first-use order."""
    seen: dict[str, None] = {}
    for match in TAG_PATTERN.finditer(text):
        try:
            kind, _, name = _classify(match.group(1), match.start())
        except TemplateSyntaxError:
            continue
        if kind == "close" or not name or root_name(name) == LOOP_ITEM:
            continue
        seen.setdefault(name, None)
    return list(seen)


def _tag_span(text: str, tag: Tag) -> tuple[int, int]:
    if tag.kind == "var":
        return tag.start, tag.end
    line_start = text.rfind("\n", 0, tag.start) + 1
    line_end = text.find("\n", tag.end)
    next_line = len(text) if line_end == -1 else line_end + 1
    line_end = len(text) if line_end == -1 else line_end
    if text[line_start:tag.start].strip() or text[tag.end:line_end].strip():
        return tag.start, tag.end
    return line_start, next_line


def parse(text: str) -> List[Node]:
    """Parse ``text`` into a node tree, raising on unbalanced blocks."""
    tags = scan_tags(text)
    root: List[Node] = []
    stack: List[BlockNode] = []
    cursor = 0

    def _append(node: Node) -> None:
        (stack[-1].children if stack else root).append(node)

    for tag in tags:
        span_start, span_end = _tag_span(text, tag)
        if span_start > cursor:
            _append(TextNode(text[cursor:span_start]))
        cursor = span_end
        if tag.kind == "var":
            _append(VarNode(tag.name))
        elif tag.kind == "open":
            block = BlockNode(tag.keyword or "", tag.name)
            _append(block)
            stack.append(block)
        else:
            stack.pop()

    if cursor < len(text):
        _append(TextNode(text[cursor:]))
    return root


# --- Rendering ------------------------------------------------------------


@dataclass
class _LoopFrame:
    item: Any


def _lookup_root(name: str, frames: List[Any]) -> Any:
    for frame in reversed(frames):
        if isinstance(frame, _LoopFrame):
            if name == LOOP_ITEM:
                return frame.item
            if isinstance(frame.item, Mapping) and name in frame.item:
                return frame.item[name]
            continue
        if isinstance(frame, Mapping) and name in frame:
            return frame[name]
    return None


def _lookup(name: str, frames: List[Any]) -> Any:
    root, _, path = name.partition(".")
    value = _lookup_root(root, frames)
    for part in path.split(".") if path else ():
        if value is None:
            break
        value = value.get(part) if isinstance(value, Mapping) else getattr(value, part, None)
    return value


def format_value(value: Any) -> str:
    """Render a variable value as text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple, set)):
        return ", ".join(format_value(item) for item in value)
    if isinstance(value, Mapping):
        return ", ".join(f"{key}: {format_value(val)}" for key, val in value.items())
    return str(value)


def is_truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, set, Mapping)):
        return len(value) > 0
    return bool(value)


def _iter_items(value: Any) -> Iterable[Any]:
    if not is_truthy(value):
        return ()
    if isinstance(value, (list, tuple)):
        return value
    if isinstance(value, set):
        return sorted(value, key=str)
    return (value,)


def _render_nodes(nodes: List[Node], frames: List[Any], out: List[str]) -> None:
    for node in nodes:
        if isinstance(node, TextNode):
            out.append(node.value)
        elif isinstance(node, VarNode):
            out.append(format_value(_lookup(node.name, frames)))
        elif node.keyword == "if":
            if is_truthy(_lookup(node.name, frames)):
                _render_nodes(node.children, frames, out)
        else:
            for item in _iter_items(_lookup(node.name, frames)):
                frames.append(_LoopFrame(item))
                try:
                    _render_nodes(node.children, frames, out)
                finally:
                    frames.pop()


def render(text: str, variables: Mapping[str, Any] | None = None) -> str:
    """Render ``text`` with ``variables``; raises TemplateSyntaxError on bad blocks."""
    out: List[str] = []
    _render_nodes(parse(text), [dict(variables or {})], out)
    return "".join(out)

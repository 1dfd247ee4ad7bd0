"""Markdown <-> ProseMirror JSON bridge.

The campaign editor stores rich-text fields as ProseMirror documents
serialized to JSON strings; the model reads and writes markdown. Parsing
uses markdown-it-py's token stream.
"""

from __future__ import annotations

import json
import re
from typing import Any

from markdown_it import MarkdownIt
from markdown_it.token import Token

_md = MarkdownIt("commonmark").enable(["table", "strikethrough"])

_MARKDOWN_PATTERNS = (
    re.compile(r"^#{1,6}\s", re.M),      # headings
    re.compile(r"\*\*[^*]+\*\*"),         # bold
    re.compile(r"\*[^*]+\*"),             # italic
    re.compile(r"^-\s", re.M),            # bullet lists
    re.compile(r"^\d+\.\s", re.M),        # numbered lists
    re.compile(r"^>\s", re.M),            # blockquotes
    re.compile(r"`[^`]+`"),               # inline code
    re.compile(r"```"),                   # code fences
    re.compile(r"\[.+\]\(.+\)"),          # links
)

_BLOCK_NODES = {
    "paragraph_open": "paragraph",
    "bullet_list_open": "bulletList",
    "ordered_list_open": "orderedList",
    "list_item_open": "listItem",
    "blockquote_open": "blockquote",
}

_MARK_OPENERS = {"strong_open": "bold", "em_open": "italic", "s_open": "strike"}
_MARK_CLOSERS = {"strong_close": "bold", "em_close": "italic", "s_close": "strike", "link_close": "link"}

EMPTY_DOC: dict[str, Any] = {"type": "doc", "content": []}


def looks_like_markdown(text: str) -> bool:
    if not text:
        return False
    return any(p.search(text) for p in _MARKDOWN_PATTERNS)


# ─── Markdown -> ProseMirror ─────────────────────────────────────────

def markdown_to_prosemirror(markdown: str) -> dict[str, Any]:
    if not markdown or not markdown.strip():
        return {"type": "doc", "content": []}

    doc = _tokens_to_doc(_md.parse(markdown))
    if not doc["content"]:
        doc["content"] = [{"type": "paragraph"}]
    return doc


def text_to_prosemirror(text: str) -> dict[str, Any]:
    """Plain text to a document: one paragraph per blank-line separated block."""
    if not text or not text.strip():
        return {"type": "doc", "content": []}

    paragraphs = []
    for para in re.split(r"\n\n+", text):
        node: dict[str, Any] = {"type": "paragraph"}
        if para.strip():
            node["content"] = [{"type": "text", "text": para.strip()}]
        paragraphs.append(node)
    return {"type": "doc", "content": paragraphs}


def to_rich_text(value: str) -> str:
    """Convert model-written text into the editor's stored JSON string."""
    doc = markdown_to_prosemirror(value) if looks_like_markdown(value) else text_to_prosemirror(value)
    # compact separators so stored values start with '{"type":"doc"'
    return json.dumps(doc, separators=(",", ":"), ensure_ascii=False)


def _tokens_to_doc(tokens: list[Token]) -> dict[str, Any]:
    root: dict[str, Any] = {"type": "doc", "content": []}
    stack = [root]
    i = 0
    while i < len(tokens):
        tok = tokens[i]

        if tok.type == "table_open":
            i, text = _flatten_table(tokens, i)
            _append(stack[-1], {"type": "paragraph", "content": [{"type": "text", "text": text}]})
            continue

        if tok.type == "heading_open":
            node = {"type": "heading", "attrs": {"level": min(int(tok.tag[1:]), 3)}}
            _append(stack[-1], node)
            stack.append(node)
        elif tok.nesting == 1:
            node = {"type": _BLOCK_NODES.get(tok.type, "paragraph")}
            _append(stack[-1], node)
            stack.append(node)
        elif tok.nesting == -1:
            node = stack.pop()
            if node["type"] in ("listItem", "blockquote") and not node.get("content"):
                node["content"] = [{"type": "paragraph"}]
        elif tok.type == "inline":
            inline = _inline_to_nodes(tok.children or [])
            if inline:
                stack[-1].setdefault("content", []).extend(inline)
        elif tok.type in ("fence", "code_block"):
            node = {"type": "codeBlock"}
            lang = tok.info.strip().split()[0] if tok.info and tok.info.strip() else ""
            if lang:
                node["attrs"] = {"language": lang}
            code = tok.content.rstrip("\n")
            if code:
                node["content"] = [{"type": "text", "text": code}]
            _append(stack[-1], node)
        elif tok.type == "hr":
            _append(stack[-1], {"type": "horizontalRule"})
        elif tok.type == "html_block" and tok.content.strip():
            _append(stack[-1], {"type": "paragraph", "content": [{"type": "text", "text": tok.content.strip()}]})
        i += 1

    return root


def _append(parent: dict[str, Any], node: dict[str, Any]) -> None:
    parent.setdefault("content", []).append(node)


def _flatten_table(tokens: list[Token], start: int) -> tuple[int, str]:
    rows: list[str] = []
    cells: list[str] = []
    i = start + 1
    while i < len(tokens) and tokens[i].type != "table_close":
        tok = tokens[i]
        if tok.type == "tr_open":
            cells = []
        elif tok.type == "inline":
            cells.append(tok.content)
        elif tok.type == "tr_close":
            rows.append(" | ".join(cells))
        i += 1
    return i + 1, "\n".join(rows)


def _inline_to_nodes(children: list[Token]) -> list[dict[str, Any]]:
    nodes: list[dict[str, Any]] = []
    marks: list[dict[str, Any]] = []

    for tok in children:
        kind = tok.type
        if kind == "text" or kind == "html_inline":
            _push_text(nodes, tok.content, marks)
        elif kind in _MARK_OPENERS:
            marks.append({"type": _MARK_OPENERS[kind]})
        elif kind == "link_open":
            marks.append({"type": "link", "attrs": {"href": tok.attrGet("href") or "", "target": "_blank"}})
        elif kind in _MARK_CLOSERS:
            _pop_mark(marks, _MARK_CLOSERS[kind])
        elif kind == "code_inline":
            _push_text(nodes, tok.content, marks + [{"type": "code"}])
        elif kind == "softbreak":
            _push_text(nodes, "\n", marks)
        elif kind == "hardbreak":
            nodes.append({"type": "hardBreak"})
        elif kind == "image":
            src = tok.attrGet("src") or ""
            _push_text(nodes, tok.content or src, marks + [{"type": "link", "attrs": {"href": src}}])
        elif tok.content:
            _push_text(nodes, tok.content, marks)
    return nodes


def _push_text(nodes: list[dict[str, Any]], text: str, marks: list[dict[str, Any]]) -> None:
    if not text:
        return
    last = nodes[-1] if nodes else None
    if last is not None and last.get("type") == "text" and last.get("marks", []) == marks:
        last["text"] += text
        return
    node: dict[str, Any] = {"type": "text", "text": text}
    if marks:
        node["marks"] = [dict(m) for m in marks]
    nodes.append(node)


def _pop_mark(marks: list[dict[str, Any]], mark_type: str) -> None:
    for idx in range(len(marks) - 1, -1, -1):
        if marks[idx]["type"] == mark_type:
            del marks[idx]
            return


# ─── ProseMirror -> Markdown ─────────────────────────────────────────

def prosemirror_to_markdown(doc: Any) -> str:
    if not isinstance(doc, dict) or doc.get("type") != "doc" or not doc.get("content"):
        return ""
    return "\n\n".join(_node_to_markdown(n) for n in doc["content"])


def field_to_markdown(value: Any) -> Any:
    """Render a stored rich-text field as markdown; other values pass through."""
    if not isinstance(value, str) or not value.startswith('{"type":"doc"'):
        return value
    try:
        return prosemirror_to_markdown(json.loads(value))
    except json.JSONDecodeError:
        return value


def _node_to_markdown(node: dict[str, Any]) -> str:
    kind = node.get("type")
    content = node.get("content") or []

    if kind == "heading":
        level = (node.get("attrs") or {}).get("level") or 1
        return f"{'#' * min(int(level), 6)} {_inline_to_markdown(content)}"
    if kind == "paragraph":
        return _inline_to_markdown(content)
    if kind == "bulletList":
        return "\n".join(_list_item(item, "- ", "  ") for item in content)
    if kind == "orderedList":
        return "\n".join(
            _list_item(item, f"{idx}. ", "   ") for idx, item in enumerate(content, start=1)
        )
    if kind == "listItem":
        return "\n".join(_node_to_markdown(n) for n in content)
    if kind == "blockquote":
        inner = "\n\n".join(_node_to_markdown(n) for n in content)
        return "\n".join(f"> {line}" for line in inner.split("\n"))
    if kind == "codeBlock":
        lang = (node.get("attrs") or {}).get("language") or ""
        code = content[0].get("text", "") if content else ""
        return f"```{lang}\n{code}\n```"
    if kind == "horizontalRule":
        return "---"
    if kind == "hardBreak":
        return "\n"
    return _inline_to_markdown(content)


def _list_item(item: dict[str, Any], marker: str, indent: str) -> str:
    body = "\n".join(_node_to_markdown(n) for n in item.get("content") or [])
    if not body:
        return marker
    lines = body.split("\n")
    return "\n".join(
        (marker + line) if i == 0 else (indent + line) for i, line in enumerate(lines)
    )


def _inline_to_markdown(content: list[dict[str, Any]]) -> str:
    parts = []
    for node in content:
        if node.get("type") == "hardBreak":
            parts.append("\n")
            continue
        if node.get("type") != "text":
            continue
        text = node.get("text", "")
        for mark in node.get("marks") or []:
            mark_type = mark.get("type")
            if mark_type == "bold":
                text = f"**{text}**"
            elif mark_type == "italic":
                text = f"*{text}*"
            elif mark_type == "strike":
                text = f"~~{text}~~"
            elif mark_type == "code":
                text = f"`{text}`"
            elif mark_type == "link":
                text = f"[{text}]({(mark.get('attrs') or {}).get('href', '')})"
        parts.append(text)
    return "".join(parts)

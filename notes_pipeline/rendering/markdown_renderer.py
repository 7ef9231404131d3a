"""
Markdown renderer for note documents.

Pure function: takes validated blocks (and optional metadata) and returns a
Markdown string. No DB, no queue, no settings, no side effects. Never raises
on well-typed input; unknown block and inline types degrade to plain text.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional, Sequence

from notes_pipeline.models.document import (
    Block,
    BlockquoteBlock,
    BulletListItemBlock,
    CheckListItemBlock,
    CodeBlock,
    HeadingBlock,
    ImageBlock,
    InlineNode,
    LinkNode,
    NoteMetadata,
    NumberedListItemBlock,
    ParagraphBlock,
    TableBlock,
    TextNode,
    UnknownBlock,
    UnknownInline,
    parse_blocks,
)

INDENT = "  "

# TODO: render real cell data once the editor's tableContent rows are modelled.
TABLE_PLACEHOLDER = (
    "| Column 1 | Column 2 |\n"
    "|----------|----------|\n"
    "| Cell 1   | Cell 2   |\n\n"
)


def convert_document(
    blocks: Sequence[Block],
    metadata: Optional[NoteMetadata] = None,
) -> str:
    """
    Render a block document to Markdown.

    Blocks are rendered in input order. When metadata is given, a ``---``
    fenced front matter header precedes the body. The result is stripped of
    leading and trailing whitespace; an empty document renders as "".

    Heading levels are clamped to 1..6 rather than repeating ``#`` ``level``
    times: Markdown has no heading deeper than ``######``, so a level 7
    heading renders as ``######`` and a level 0 heading as ``#``.
    """
    if not blocks:
        return ""

    parts: list[str] = []
    if metadata is not None:
        parts.append(render_front_matter(metadata))

    for block in blocks:
        _render_block(block, 0, parts)

    return "".join(parts).strip()


def convert_raw_document(raw_blocks: Any, metadata: Optional[NoteMetadata] = None) -> str:
    """Render untrusted editor JSON; malformed nodes degrade instead of raising."""
    return convert_document(parse_blocks(raw_blocks), metadata)


def render_front_matter(metadata: NoteMetadata) -> str:
    lines = ["---", f"title: {metadata.title or 'Untitled'}"]
    if metadata.tags:
        lines.append(f"tags: {', '.join(metadata.tags)}")
    if metadata.folder:
        lines.append(f"folder: {metadata.folder}")
    if metadata.created_at:
        lines.append(f"created: {metadata.created_at}")
    if metadata.updated_at:
        lines.append(f"updated: {metadata.updated_at}")
    lines.append("---")
    return "\n".join(lines) + "\n\n"


def _render_block(block: Block, depth: int, out: list[str]) -> None:
    indent = INDENT * depth

    match block:
        case ParagraphBlock():
            out.append(convert_inline_content(block.content) + "\n\n")

        case HeadingBlock():
            level = min(max(block.attrs.level or 1, 1), 6)
            out.append("#" * level + " " + convert_inline_content(block.content) + "\n\n")

        case BulletListItemBlock():
            out.append(indent + "- " + convert_inline_content(block.content) + "\n")

        case NumberedListItemBlock():
            # Every item is "1."; renderers renumber ordered lists themselves.
            out.append(indent + "1. " + convert_inline_content(block.content) + "\n")

        case CheckListItemBlock():
            mark = "x" if block.attrs.checked else " "
            out.append(indent + f"- [{mark}] " + convert_inline_content(block.content) + "\n")

        case CodeBlock():
            language = block.attrs.language or ""
            code = convert_inline_content(block.content)
            out.append("```" + language + "\n" + code + "\n```\n\n")

        case BlockquoteBlock():
            out.append("> " + convert_inline_content(block.content) + "\n\n")

        case ImageBlock():
            out.append(f"![{block.attrs.alt or ''}]({block.attrs.src or ''})\n\n")

        case TableBlock():
            out.append(TABLE_PLACEHOLDER)

        case UnknownBlock():
            text = convert_inline_content(block.content)
            if text:
                out.append(text + "\n\n")

        case _:
            pass

    for child in block.children:
        _render_block(child, depth + 1, out)


def convert_inline_content(nodes: Iterable[InlineNode]) -> str:
    """
    Render inline nodes.

    Marks are applied in a fixed order: bold/italic (combined as ``***``),
    then strikethrough, then code, then underline. Links render their
    children recursively as the label.
    """
    parts: list[str] = []
    for node in nodes:
        match node:
            case TextNode():
                if node.text:
                    parts.append(_apply_marks(node))

            case LinkNode():
                label = convert_inline_content(node.content)
                parts.append(f"[{label}]({node.attrs.href})")

            case UnknownInline():
                parts.append(convert_inline_content(node.content))

            case _:
                pass

    return "".join(parts)


def _apply_marks(node: TextNode) -> str:
    text = node.text or ""
    marks = node.attrs

    if marks.bold and marks.italic:
        text = f"***{text}***"
    elif marks.bold:
        text = f"**{text}**"
    elif marks.italic:
        text = f"*{text}*"

    if marks.strikethrough:
        text = f"~~{text}~~"
    if marks.code:
        text = f"`{text}`"
    if marks.underline:
        text = f"<u>{text}</u>"

    return text

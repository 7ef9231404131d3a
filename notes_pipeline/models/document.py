"""
Pydantic v2 models for the editor's block document.

A note is a list of top-level blocks. Each block carries inline nodes
(text runs and links) and may nest child blocks. The editor owns this schema
and evolves it independently, so every union has a catch-all member:
unknown block types become ``UnknownBlock`` and unknown inline types become
``UnknownInline`` instead of failing validation.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
    model_validator,
)


def _drop_nulls(data: Any) -> Any:
    # The editor sends null for unset attributes; fall back to field defaults.
    if isinstance(data, dict):
        return {k: v for k, v in data.items() if v is not None}
    return data


class _Node(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def nulls_to_defaults(cls, data: Any) -> Any:
        return _drop_nulls(data)


# =============================================================================
# Inline nodes
# =============================================================================

class TextMarks(_Node):
    bold: bool = False
    italic: bool = False
    strikethrough: bool = False
    code: bool = False
    underline: bool = False


class LinkAttrs(_Node):
    href: str = ""


class TextNode(_Node):
    type: Literal["text"] = "text"
    text: Optional[str] = None
    attrs: TextMarks = Field(default_factory=TextMarks)


class LinkNode(_Node):
    type: Literal["link"] = "link"
    attrs: LinkAttrs = Field(default_factory=LinkAttrs)
    content: list["InlineNode"] = Field(default_factory=list)


class UnknownInline(_Node):
    """Inline node of a type this worker does not know; only its children render."""

    type: str = "unknown"
    content: list["InlineNode"] = Field(default_factory=list)


def _inline_kind(value: Any) -> str:
    if isinstance(value, UnknownInline):
        return "unknown"
    kind = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    if kind in ("text", "link"):
        return kind
    return "unknown"


InlineNode = Annotated[
    Union[
        Annotated[TextNode, Tag("text")],
        Annotated[LinkNode, Tag("link")],
        Annotated[UnknownInline, Tag("unknown")],
    ],
    Discriminator(_inline_kind),
]


# =============================================================================
# Blocks
# =============================================================================

class HeadingAttrs(_Node):
    level: Optional[int] = None


class CheckAttrs(_Node):
    checked: bool = False


class CodeAttrs(_Node):
    language: Optional[str] = None


class ImageAttrs(_Node):
    src: Optional[str] = None
    alt: Optional[str] = None


class _Block(_Node):
    content: list[InlineNode] = Field(default_factory=list)
    children: list["Block"] = Field(default_factory=list)


class ParagraphBlock(_Block):
    type: Literal["paragraph"] = "paragraph"


class HeadingBlock(_Block):
    type: Literal["heading"] = "heading"
    attrs: HeadingAttrs = Field(default_factory=HeadingAttrs)


class BulletListItemBlock(_Block):
    type: Literal["bulletListItem"] = "bulletListItem"


class NumberedListItemBlock(_Block):
    type: Literal["numberedListItem"] = "numberedListItem"


class CheckListItemBlock(_Block):
    type: Literal["checkListItem"] = "checkListItem"
    attrs: CheckAttrs = Field(default_factory=CheckAttrs)


class CodeBlock(_Block):
    type: Literal["codeBlock"] = "codeBlock"
    attrs: CodeAttrs = Field(default_factory=CodeAttrs)


class BlockquoteBlock(_Block):
    type: Literal["blockquote"] = "blockquote"


class ImageBlock(_Block):
    type: Literal["image"] = "image"
    attrs: ImageAttrs = Field(default_factory=ImageAttrs)


class TableBlock(_Block):
    # Cell data is not rendered yet, so the table body is accepted in any shape.
    type: Literal["table"] = "table"
    content: Any = None


class UnknownBlock(_Block):
    type: str = "unknown"


BLOCK_TYPES: dict[str, type[_Block]] = {
    "paragraph": ParagraphBlock,
    "heading": HeadingBlock,
    "bulletListItem": BulletListItemBlock,
    "numberedListItem": NumberedListItemBlock,
    "checkListItem": CheckListItemBlock,
    "codeBlock": CodeBlock,
    "blockquote": BlockquoteBlock,
    "image": ImageBlock,
    "table": TableBlock,
}


def _block_kind(value: Any) -> str:
    if isinstance(value, UnknownBlock):
        return "unknown"
    kind = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    if kind in BLOCK_TYPES:
        return kind
    return "unknown"


Block = Annotated[
    Union[
        Annotated[ParagraphBlock, Tag("paragraph")],
        Annotated[HeadingBlock, Tag("heading")],
        Annotated[BulletListItemBlock, Tag("bulletListItem")],
        Annotated[NumberedListItemBlock, Tag("numberedListItem")],
        Annotated[CheckListItemBlock, Tag("checkListItem")],
        Annotated[CodeBlock, Tag("codeBlock")],
        Annotated[BlockquoteBlock, Tag("blockquote")],
        Annotated[ImageBlock, Tag("image")],
        Annotated[TableBlock, Tag("table")],
        Annotated[UnknownBlock, Tag("unknown")],
    ],
    Discriminator(_block_kind),
]

LinkNode.model_rebuild()
UnknownInline.model_rebuild()
for _model in (*BLOCK_TYPES.values(), UnknownBlock):
    _model.model_rebuild()


# =============================================================================
# Note metadata (front matter)
# =============================================================================

class NoteMetadata(BaseModel):
    title: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    folder: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def nulls_to_defaults(cls, data: Any) -> Any:
        return _drop_nulls(data)


# =============================================================================
# Lenient parsing
# =============================================================================

_block_adapter: TypeAdapter[Block] = TypeAdapter(Block)
_inline_adapter: TypeAdapter[InlineNode] = TypeAdapter(InlineNode)


def parse_inline(raw: Any) -> list[InlineNode]:
    """Validate a list of raw inline nodes, degrading bad nodes instead of raising."""
    if not isinstance(raw, list):
        return []

    nodes: list[InlineNode] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            nodes.append(_inline_adapter.validate_python(item))
        except ValidationError:
            nodes.append(_degrade_inline(item))
    return nodes


def _degrade_inline(item: dict) -> InlineNode:
    text = item.get("text")
    if isinstance(text, str) and item.get("type") == "text":
        return TextNode(text=text)

    content = parse_inline(item.get("content"))
    if item.get("type") == "link":
        try:
            return LinkNode.model_validate({**item, "content": content})
        except ValidationError:
            pass

    return UnknownInline(type=str(item.get("type") or "unknown"), content=content)


def parse_blocks(raw: Any) -> list[Block]:
    """Validate a list of raw blocks, degrading malformed blocks instead of raising.

    Never raises: anything that is not a list yields an empty document, and
    non-dict entries are dropped.
    """
    if not isinstance(raw, list):
        return []

    blocks: list[Block] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            blocks.append(_block_adapter.validate_python(item))
        except ValidationError:
            blocks.append(_degrade_block(item))
    return blocks


def _degrade_block(item: dict) -> Block:
    """Keep the block kind when only its inline content or children were bad."""
    content = parse_inline(item.get("content"))
    children = parse_blocks(item.get("children"))

    model = BLOCK_TYPES.get(_block_kind(item))
    if model is not None and model is not TableBlock:
        try:
            return model.model_validate({**item, "content": content, "children": children})
        except ValidationError:
            # The block's own attrs are unusable; fall through to plain text.
            pass

    return UnknownBlock(
        type=str(item.get("type") or "unknown"),
        content=content,
        children=children,
    )

from .document import (
    Block,
    InlineNode,
    NoteMetadata,
    TextNode,
    TextMarks,
    LinkNode,
    UnknownInline,
    ParagraphBlock,
    HeadingBlock,
    BulletListItemBlock,
    NumberedListItemBlock,
    CheckListItemBlock,
    CodeBlock,
    BlockquoteBlock,
    ImageBlock,
    TableBlock,
    UnknownBlock,
    parse_blocks,
    parse_inline,
)
from .dto import ConversionJob, JobType, DeadLetterRecord, markdown_object_key

__all__ = [
    "Block",
    "InlineNode",
    "NoteMetadata",
    "TextNode",
    "TextMarks",
    "LinkNode",
    "UnknownInline",
    "ParagraphBlock",
    "HeadingBlock",
    "BulletListItemBlock",
    "NumberedListItemBlock",
    "CheckListItemBlock",
    "CodeBlock",
    "BlockquoteBlock",
    "ImageBlock",
    "TableBlock",
    "UnknownBlock",
    "parse_blocks",
    "parse_inline",
    "ConversionJob",
    "JobType",
    "DeadLetterRecord",
    "markdown_object_key",
]

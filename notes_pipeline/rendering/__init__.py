from .markdown_renderer import (
    convert_document,
    convert_raw_document,
    convert_inline_content,
    render_front_matter,
)

__all__ = [
    "convert_document",
    "convert_raw_document",
    "convert_inline_content",
    "render_front_matter",
]

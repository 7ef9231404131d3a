# notes_pipeline/db/models/__init__.py
from .base import Base
from .note import Note

__all__ = [
    "Base",
    "Note",
]

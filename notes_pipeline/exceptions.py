"""
Exception hierarchy for the conversion worker.

Any exception escaping a job handler sends the message down the retry /
dead-letter path; these classes only name the failures the worker itself
raises so they can be told apart in logs and dead-letter records.
"""


class PipelineError(Exception):
    """Base exception for all worker errors."""

    def __init__(self, detail: str = "Pipeline error", code: str = "PIPELINE_ERROR") -> None:
        self.detail = detail
        self.code = code
        super().__init__(detail)


class InvalidJobError(PipelineError):
    """Raised when a queue message body is not a valid conversion job."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail=detail, code="INVALID_JOB")


class MarkdownNotFoundError(PipelineError):
    """Raised by index-for-search when no Markdown has been written for the note yet."""

    def __init__(self, note_id: str, key: str) -> None:
        self.note_id = note_id
        self.key = key
        super().__init__(
            detail=f"Markdown not found for note {note_id}",
            code="MARKDOWN_NOT_FOUND",
        )


class InvalidObjectKeyError(PipelineError):
    """Raised when an object key would escape the storage root."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(detail=f"Invalid object key: {key!r}", code="INVALID_OBJECT_KEY")


class TransientStoreError(PipelineError):
    """Raised when a durable or relational store is temporarily unavailable."""

    def __init__(self, detail: str = "Store unavailable") -> None:
        super().__init__(detail=detail, code="STORE_UNAVAILABLE")

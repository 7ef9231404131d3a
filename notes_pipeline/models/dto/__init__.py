from .queueDTO import ConversionJob, JobType, markdown_object_key
from .deadLetterDTO import DeadLetterRecord

__all__ = [
    "ConversionJob",
    "JobType",
    "markdown_object_key",
    "DeadLetterRecord",
]

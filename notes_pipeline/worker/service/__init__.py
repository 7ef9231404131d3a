from .worker_service import BatchSummary, QueueMessage, process_batch, process_message

__all__ = ["BatchSummary", "QueueMessage", "process_batch", "process_message"]

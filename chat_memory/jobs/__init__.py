from .backfill import BackfillReport, EmbeddingBackfillWorker
from .retention import CleanupReport, RetentionManager

__all__ = ["BackfillReport", "CleanupReport", "EmbeddingBackfillWorker", "RetentionManager"]

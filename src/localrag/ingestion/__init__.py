"""Document ingestion pipeline."""

from .service import IngestionError, IngestionJob, IngestionPipeline, IngestionResult, JobStatus
from .sources import DirectorySource, DocumentSource, SourceDocument

__all__ = [
    "DirectorySource",
    "DocumentSource",
    "IngestionError",
    "IngestionJob",
    "IngestionPipeline",
    "IngestionResult",
    "JobStatus",
    "SourceDocument",
]

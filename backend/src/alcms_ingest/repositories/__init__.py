"""Repository layer for the ingestion pipeline.

Provides data access abstractions for ingest upload tasks.
"""

from alcms_ingest.repositories.ingest_upload import IngestUploadRepository

__all__ = [
    "IngestUploadRepository",
]

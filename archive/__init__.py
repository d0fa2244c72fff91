"""
Archive of every enriched record as gzip-compressed NDJSON batches.
"""

from archive.sink import ArchiveSink, batch_key
from archive.writers import ArchiveWriter, FilesystemArchiveWriter, S3ArchiveWriter

__all__ = [
    "ArchiveSink",
    "batch_key",
    "ArchiveWriter",
    "FilesystemArchiveWriter",
    "S3ArchiveWriter",
]

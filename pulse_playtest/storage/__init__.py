"""Checkpoint persistence over pluggable blob stores."""

from .blobs import BlobStore, FileBlobStore, MemoryBlobStore  # noqa: F401
from .checkpoints import CheckpointStore, ReplayOverrides, checkpoint_key  # noqa: F401

"""A key-value store with a write-ahead log, checkpoints, an LSM tree and an HTTP server."""

__version__ = "0.1.0"
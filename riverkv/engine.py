"""Storage engine combining a memory table, write-ahead log, checkpoints and an LSM tree."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path

from .block import Block
from .checkpoint import Checkpoint
from .compaction import CompactionManager, CompactionStats
from .lsm import NUM_LEVELS, LSMTree
from .wal import WAL, OpType

DEFAULT_MAX_MEM_TABLE_SIZE = 32 * 1024 * 1024
DEFAULT_CHECKPOINT_INTERVAL = 0.5
DEFAULT_COMPACTION_WORKERS = 4

_log = logging.getLogger(__name__)


class EngineClosedError(RuntimeError):
    """Raised when an operation is attempted on a closed engine."""

    def __init__(self) -> None:
        super().__init__("engine is closed")


@dataclass
class EngineStats:
    """Snapshot of the engine's memory table, compaction and level state."""

    mem_table_size: int = 0
    mem_table_keys: int = 0
    compaction_stats: CompactionStats = field(default_factory=CompactionStats)
    level_sizes: list[int] = field(default_factory=lambda: [0] * NUM_LEVELS)
    level_blocks: list[int] = field(default_factory=lambda: [0] * NUM_LEVELS)


class Engine:
    """Key-value store kept under ``base_dir``.

    Writes go to the log first and then to an in-memory table, which is
    flushed to the tree once it reaches ``max_mem_table_size`` bytes. The
    memory table is checkpointed every ``checkpoint_interval`` seconds.
    """

    def __init__(
        self,
        base_dir: str | os.PathLike,
        max_mem_table_size: int = DEFAULT_MAX_MEM_TABLE_SIZE,
        checkpoint_interval: float = DEFAULT_CHECKPOINT_INTERVAL,
        compaction_workers: int = DEFAULT_COMPACTION_WORKERS,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.max_mem_table_size = max_mem_table_size
        self.checkpoint_interval = checkpoint_interval
        data_dir = self.base_dir / "data"
        wal_dir = self.base_dir / "wal"

        self._lsm = LSMTree(data_dir)
        try:
            self._wal = WAL(wal_dir)
        except Exception:
            self._lsm.close()
            raise
        try:
            self._checkpoint = Checkpoint(self.base_dir)
        except Exception:
            self._wal.close()
            self._lsm.close()
            raise
        self._compaction = CompactionManager(self._lsm, data_dir, compaction_workers)

        self._lock = threading.RLock()
        self._mem_table: dict[bytes, bytes] = {}
        self._mem_table_size = 0
        self._last_checkpointed_wal_timestamp = 0
        self._closed = False
        self._stopping = threading.Event()
        self._flush_requested = threading.Event()

        try:
            self._recover()
        except Exception:
            self._wal.close()
            self._lsm.close()
            raise

        self._compaction.start()
        self._threads = [
            threading.Thread(target=self._background_flusher, name="engine-flush", daemon=True),
            threading.Thread(
                target=self._background_checkpointer, name="engine-checkpoint", daemon=True
            ),
        ]
        for thread in self._threads:
            thread.start()

    def _recover(self) -> None:
        data = self._checkpoint.load()
        self._mem_table = dict(data.mem_table)
        self._mem_table_size = data.mem_table_size
        self._last_checkpointed_wal_timestamp = data.last_wal_timestamp
        for entry in self._wal.replay(data.last_wal_timestamp):
            if entry.op_type == OpType.PUT:
                value = entry.value or b""
                self._mem_table[entry.key] = value
                self._mem_table_size += len(entry.key) + len(value)
            elif entry.op_type == OpType.DELETE:
                self._mem_table.pop(entry.key, None)
            self._last_checkpointed_wal_timestamp = entry.timestamp

    def put(self, key: bytes, value: bytes) -> None:
        """Store ``value`` under ``key``."""
        key = bytes(key)
        value = bytes(value)
        with self._lock:
            if self._closed:
                raise EngineClosedError()
            self._wal.append_put(key, value)
            old = self._mem_table.get(key)
            old_size = len(old) if old is not None else 0
            self._mem_table[key] = value
            self._mem_table_size += len(key) + len(value) - old_size
            if self._mem_table_size >= self.max_mem_table_size:
                self._flush_requested.set()

    def get(self, key: bytes) -> bytes:
        """Return the value stored under ``key``; raises KeyNotFoundError if absent."""
        key = bytes(key)
        with self._lock:
            if self._closed:
                raise EngineClosedError()
            value = self._mem_table.get(key)
        if value is not None:
            return value
        return self._lsm.read(key)

    def delete(self, key: bytes) -> None:
        """Remove ``key`` from the memory table."""
        key = bytes(key)
        with self._lock:
            if self._closed:
                raise EngineClosedError()
            self._wal.append_delete(key)
            old = self._mem_table.pop(key, None)
            if old is not None:
                self._mem_table_size -= len(old)

    def _background_flusher(self) -> None:
        while True:
            self._flush_requested.wait()
            self._flush_requested.clear()
            if self._stopping.is_set():
                return
            try:
                self._flush()
            except Exception:
                _log.exception("error flushing memory table")

    def _background_checkpointer(self) -> None:
        while not self._stopping.wait(self.checkpoint_interval):
            try:
                self._create_checkpoint()
            except Exception:
                _log.exception("error creating checkpoint")

    def _create_checkpoint(self) -> None:
        with self._lock:
            self._checkpoint.save(
                dict(self._mem_table),
                self._mem_table_size,
                self._last_checkpointed_wal_timestamp,
            )

    def checkpoint(self) -> None:
        """Save a checkpoint of the memory table now."""
        with self._lock:
            if self._closed:
                raise EngineClosedError()
            self._create_checkpoint()

    def _flush(self) -> None:
        with self._lock:
            table = self._mem_table
            self._mem_table = {}
            self._mem_table_size = 0
            if not table:
                return
            block = Block()
            for key, value in table.items():
                block.add(key, value)
            self._lsm.write(block)

    def close(self) -> None:
        """Checkpoint, flush the memory table and release all resources."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._stopping.set()
        self._flush_requested.set()
        for thread in self._threads:
            if thread is not threading.current_thread():
                thread.join()

        try:
            self._create_checkpoint()
        except Exception:
            _log.exception("error creating final checkpoint during close")
        try:
            self._flush()
        except Exception:
            _log.exception("error flushing memory table during close")

        self._compaction.stop()
        try:
            self._wal.close()
        except Exception:
            _log.exception("error closing WAL")
        self._lsm.close()

    def stats(self) -> EngineStats:
        """Current statistics of the engine."""
        with self._lock:
            with self._lsm.lock:
                level_blocks = [len(level) for level in self._lsm.levels]
                level_sizes = [sum(info.size for info in level) for level in self._lsm.levels]
            return EngineStats(
                mem_table_size=self._mem_table_size,
                mem_table_keys=len(self._mem_table),
                compaction_stats=self._compaction.stats(),
                level_sizes=level_sizes,
                level_blocks=level_blocks,
            )

    def run_compaction(self) -> None:
        """Trigger one compaction cycle."""
        self._compaction.run_compaction()

    def __enter__(self) -> Engine:
        return self

    def __exit__(self, *args) -> None:
        self.close()
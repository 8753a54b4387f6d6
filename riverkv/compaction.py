"""Background compaction of tree levels by a pool of worker threads."""

from __future__ import annotations

import bisect
import dataclasses
import logging
import os
import queue
import struct
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from .block import Block, BlockFormatError
from .lsm import BLOCK_SUFFIX, NUM_LEVELS, BlockInfo, LSMTree

DEFAULT_QUEUE_SIZE = 100
SCHEDULE_TIMEOUT = 0.01

_U32 = struct.Struct("<I")
_POLL_INTERVAL = 0.05

_log = logging.getLogger(__name__)


class CompactionError(Exception):
    """Raised when a compaction task cannot be completed."""


@dataclass
class CompactionStats:
    """Counters describing the compactions performed so far."""

    compaction_count: int = 0
    blocks_compacted: int = 0
    bytes_read: int = 0
    bytes_written: int = 0
    total_time: float = 0.0
    cpu_usage_percent: float = 0.0
    tasks_in_queue: int = 0
    tasks_dropped: int = 0
    last_compaction_time: float | None = None
    compaction_throughput: float = 0.0


@dataclass
class CompactionTask:
    """Blocks of one level to be merged into the next level."""

    source_level: int
    target_level: int
    blocks: list[BlockInfo] = field(default_factory=list)


def _iter_pairs(data: bytes) -> Iterator[tuple[bytes, bytes]]:
    """Key-value pairs of a block's data section."""
    try:
        (count,) = _U32.unpack_from(data, 0)
        offset = _U32.size
        for _ in range(count):
            (key_len,) = _U32.unpack_from(data, offset)
            offset += _U32.size
            key = data[offset : offset + key_len]
            offset += key_len
            (value_len,) = _U32.unpack_from(data, offset)
            offset += _U32.size
            value = data[offset : offset + value_len]
            offset += value_len
            if len(key) != key_len or len(value) != value_len:
                raise CompactionError("block data truncated")
            yield key, value
    except struct.error as exc:
        raise CompactionError(f"block data truncated: {exc}") from exc


def _read_block(info: BlockInfo) -> Block:
    try:
        with open(info.path, "rb") as handle:
            block = Block()
            block.decode(handle)
    except OSError as exc:
        raise CompactionError(f"failed to open block file: {exc}") from exc
    except BlockFormatError as exc:
        raise CompactionError(f"failed to decode block file {info.path}: {exc}") from exc
    return block


class CompactionManager:
    """Runs compaction tasks for an :class:`LSMTree` on worker threads."""

    def __init__(
        self,
        tree: LSMTree,
        data_dir: str | os.PathLike,
        num_workers: int = 4,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.tree = tree
        self.data_dir = Path(data_dir)
        self.num_workers = num_workers
        self._tasks: queue.Queue[CompactionTask] = queue.Queue(maxsize=queue_size)
        self._stopping = threading.Event()
        self._lock = threading.Lock()
        self._stats = CompactionStats()
        self._workers: list[threading.Thread] = []

    def start(self) -> None:
        """Start the worker threads."""
        if self._stopping.is_set() or self._workers:
            return
        for worker_id in range(self.num_workers):
            thread = threading.Thread(
                target=self._worker, args=(worker_id,), name=f"compaction-{worker_id}", daemon=True
            )
            self._workers.append(thread)
            thread.start()

    def stop(self) -> None:
        """Stop the workers once the queued tasks have been processed."""
        self._stopping.set()
        for thread in self._workers:
            if thread is not threading.current_thread():
                thread.join()

    def _worker(self, worker_id: int) -> None:
        while True:
            try:
                task = self._tasks.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if self._stopping.is_set():
                    return
                continue
            try:
                self._run_task(worker_id, task)
            finally:
                self._tasks.task_done()

    def _run_task(self, worker_id: int, task: CompactionTask) -> None:
        with self._lock:
            self._stats.tasks_in_queue = self._tasks.qsize()

        start = time.perf_counter()
        cpu_start = time.process_time()
        try:
            bytes_read, bytes_written = self._compact(task)
        except (CompactionError, OSError) as exc:
            _log.error("worker %d: compaction failed: %s", worker_id, exc)
            return
        duration = time.perf_counter() - start
        cpu_used = time.process_time() - cpu_start
        cpu_usage = 100.0 * cpu_used / duration if duration > 0 else 0.0
        throughput = (bytes_read + bytes_written) / duration if duration > 0 else 0.0

        with self._lock:
            stats = self._stats
            stats.compaction_count += 1
            stats.blocks_compacted += len(task.blocks)
            stats.bytes_read += bytes_read
            stats.bytes_written += bytes_written
            stats.total_time += duration
            stats.cpu_usage_percent = cpu_usage
            stats.last_compaction_time = time.time()
            stats.compaction_throughput = throughput
            stats.tasks_in_queue = self._tasks.qsize()

        _log.info(
            "worker %d: compacted %d blocks from L%d to L%d in %.6fs "
            "(CPU: %.2f%%, Throughput: %.2f MB/s)",
            worker_id,
            len(task.blocks),
            task.source_level,
            task.target_level,
            duration,
            cpu_usage,
            throughput / 1024 / 1024,
        )

    def schedule_compaction(
        self, source_level: int, target_level: int, blocks: list[BlockInfo]
    ) -> None:
        """Queue ``blocks`` for compaction, dropping the task if the queue stays full."""
        if not blocks:
            return
        if self._stopping.is_set():
            raise RuntimeError("compaction manager is stopped")
        task = CompactionTask(source_level, target_level, list(blocks))
        try:
            self._tasks.put(task, timeout=SCHEDULE_TIMEOUT)
        except queue.Full:
            with self._lock:
                self._stats.tasks_dropped += 1
            _log.warning(
                "compaction task queue is full, dropping compaction of %d blocks from L%d to L%d",
                len(blocks),
                source_level,
                target_level,
            )

    def _compact(self, task: CompactionTask) -> tuple[int, int]:
        target_dir = self.data_dir / f"L{task.target_level}"
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CompactionError(f"failed to create target directory: {exc}") from exc

        by_key = sorted(task.blocks, key=lambda info: info.min_key)
        # Apply oldest blocks first so that newer values win.
        ordered = sorted(by_key, key=lambda info: info.created_at)

        merged: dict[bytes, bytes] = {}
        bytes_read = 0
        for info in ordered:
            block = _read_block(info)
            bytes_read += info.size
            merged.update(_iter_pairs(block.data))

        output = Block()
        for key in sorted(merged):
            output.add(key, merged[key])
        output.finalize()

        stamp = time.time_ns()
        target_path = target_dir / f"{stamp}{BLOCK_SUFFIX}"
        while target_path.exists():
            stamp += 1
            target_path = target_dir / f"{stamp}{BLOCK_SUFFIX}"
        try:
            with open(target_path, "wb") as handle:
                output.encode(handle)
        except OSError as exc:
            raise CompactionError(f"failed to create target file: {exc}") from exc
        bytes_written = target_path.stat().st_size

        new_info = BlockInfo(
            path=target_path,
            size=bytes_written,
            min_key=output.min_key(),
            max_key=output.max_key(),
            created_at=time.time(),
        )
        if task.target_level < NUM_LEVELS:
            with self.tree.lock:
                bisect.insort(
                    self.tree.levels[task.target_level], new_info, key=lambda info: info.min_key
                )

        for info in task.blocks:
            try:
                os.remove(info.path)
            except OSError as exc:
                _log.warning("failed to delete source block %s: %s", info.path, exc)

        return bytes_read, bytes_written

    def stats(self) -> CompactionStats:
        """A copy of the current statistics."""
        with self._lock:
            return dataclasses.replace(self._stats)

    def run_compaction(self) -> None:
        """Schedule compaction of the lowest level that has reached its threshold."""
        with self.tree.lock:
            with self._lock:
                tasks_in_queue = self._stats.tasks_in_queue
            if tasks_in_queue > self.num_workers * 2:
                _log.info("skipping compaction cycle, %d tasks already in queue", tasks_in_queue)
                return

            for level in range(NUM_LEVELS - 1):
                if not self.tree.should_compact(level):
                    continue
                blocks = self.tree.levels[level]
                if not blocks:
                    continue
                if level == 0 and len(blocks) > 4:
                    batch_size = (len(blocks) + 1) // 2
                    self.schedule_compaction(level, level + 1, blocks[:batch_size])
                    self.schedule_compaction(level, level + 1, blocks[batch_size:])
                    self.tree.levels[level] = []
                    return
                self.schedule_compaction(level, level + 1, blocks)
                self.tree.levels[level] = []
                return
"""Log-structured merge tree of block files arranged in seven levels."""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from .block import Block, BlockFormatError, KeyNotFoundError

NUM_LEVELS = 7
DEFAULT_BASE_LEVEL_SIZE = 64 * 1024 * 1024
BLOCK_SUFFIX = ".blk"

_log = logging.getLogger(__name__)


@dataclass
class BlockInfo:
    """Metadata about one block file held by the tree."""

    path: Path
    size: int
    min_key: bytes
    max_key: bytes
    created_at: float

    def contains(self, key: bytes) -> bool:
        """Whether ``key`` lies within this block's inclusive key range."""
        return self.min_key <= key <= self.max_key


def _read_key_range(path: Path) -> tuple[bytes, bytes]:
    """Key range stored in a block file, or the file name when it cannot be decoded."""
    with open(path, "rb") as handle:
        block = Block()
        try:
            block.decode(handle)
        except BlockFormatError:
            name = path.name.encode("utf-8", "surrogateescape")
            return name, name
    return block.min_key(), block.max_key()


def _read_from_block(path: Path, key: bytes) -> bytes | None:
    """Value for ``key`` in the block file at ``path``, or None if it cannot be found."""
    try:
        with open(path, "rb") as handle:
            block = Block()
            block.decode(handle)
        return block.get(key)
    except (OSError, BlockFormatError, KeyNotFoundError):
        return None


class LSMTree:
    """Block files in ``L0`` .. ``L6`` directories, with level 0 holding the newest data.

    Level 0 blocks may overlap; blocks in deeper levels are kept sorted by
    their minimum key and searched by binary search.
    """

    def __init__(
        self,
        data_dir: str | os.PathLike,
        base_level_size: int = DEFAULT_BASE_LEVEL_SIZE,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.lock = threading.RLock()
        self.levels: list[list[BlockInfo]] = [[] for _ in range(NUM_LEVELS)]
        self.level_max_sizes = [base_level_size << (2 * i) for i in range(NUM_LEVELS)]
        self.compaction_thresholds = [size * 3 // 4 for size in self.level_max_sizes]
        self._compacting = False
        self._closed = False
        self._wakeup = threading.Event()
        self._worker: threading.Thread | None = None
        self._load_existing_blocks()

    def _level_dir(self, level: int) -> Path:
        return self.data_dir / f"L{level}"

    def _load_existing_blocks(self) -> None:
        for level in range(NUM_LEVELS):
            level_dir = self._level_dir(level)
            if not level_dir.exists():
                continue
            blocks = []
            for path in level_dir.iterdir():
                if path.is_dir() or not path.name.endswith(BLOCK_SUFFIX):
                    continue
                info = path.stat()
                min_key, max_key = _read_key_range(path)
                blocks.append(
                    BlockInfo(
                        path=path,
                        size=info.st_size,
                        min_key=min_key,
                        max_key=max_key,
                        created_at=info.st_mtime,
                    )
                )
            blocks.sort(key=lambda block: block.min_key)
            self.levels[level] = blocks

    def write(self, block: Block) -> BlockInfo:
        """Store ``block`` as a new level 0 file and return its metadata."""
        with self.lock:
            level_dir = self._level_dir(0)
            level_dir.mkdir(parents=True, exist_ok=True)
            if not block.data:
                block.finalize()
            stamp = time.time_ns()
            path = level_dir / f"{stamp}_{block.id()}{BLOCK_SUFFIX}"
            while path.exists():
                stamp += 1
                path = level_dir / f"{stamp}_{block.id()}{BLOCK_SUFFIX}"
            with open(path, "wb") as handle:
                block.encode(handle)
            info = BlockInfo(
                path=path,
                size=path.stat().st_size,
                min_key=block.min_key(),
                max_key=block.max_key(),
                created_at=time.time(),
            )
            self.levels[0].append(info)
            if self.should_compact(0):
                self._trigger_compaction()
            return info

    def _find_block(self, level: int, key: bytes) -> BlockInfo | None:
        blocks = self.levels[level]
        left, right = 0, len(blocks) - 1
        while left <= right:
            mid = (left + right) // 2
            candidate = blocks[mid]
            if key < candidate.min_key:
                right = mid - 1
            elif key > candidate.max_key:
                left = mid + 1
            else:
                return candidate
        return None

    def read(self, key: bytes) -> bytes:
        """Return the newest value stored for ``key``, searching level 0 first."""
        key = bytes(key)
        with self.lock:
            for info in reversed(self.levels[0]):
                if info.contains(key):
                    value = _read_from_block(info.path, key)
                    if value is not None:
                        return value
            for level in range(1, NUM_LEVELS):
                info = self._find_block(level, key)
                if info is not None:
                    value = _read_from_block(info.path, key)
                    if value is not None:
                        return value
        raise KeyNotFoundError(key)

    def should_compact(self, level: int) -> bool:
        """Whether the blocks of ``level`` have reached its compaction threshold."""
        with self.lock:
            total = sum(info.size for info in self.levels[level])
            return total >= self.compaction_thresholds[level]

    def _trigger_compaction(self) -> None:
        if not self._compacting and not self._closed:
            self._compacting = True
            self._wakeup.set()

    def start_compaction_worker(self) -> None:
        """Start the background thread that runs requested compactions."""
        with self.lock:
            if self._closed or (self._worker is not None and self._worker.is_alive()):
                return
            self._worker = threading.Thread(
                target=self._worker_loop, name="lsm-compaction", daemon=True
            )
            self._worker.start()

    def _worker_loop(self) -> None:
        while True:
            self._wakeup.wait()
            if self._closed:
                return
            self._wakeup.clear()
            self._run_compaction()
            with self.lock:
                self._compacting = False

    def _run_compaction(self) -> None:
        with self.lock:
            for level in range(NUM_LEVELS - 1):
                if self.should_compact(level):
                    self._compact_level(level)

    def _compact_level(self, level: int) -> None:
        next_level = level + 1
        next_dir = self._level_dir(next_level)
        try:
            next_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            _log.warning("failed to create L%d directory: %s", next_level, exc)
            return
        for info in self.levels[level]:
            new_path = next_dir / info.path.name
            try:
                os.replace(info.path, new_path)
            except OSError as exc:
                _log.warning(
                    "failed to move block from L%d to L%d: %s", level, next_level, exc
                )
                continue
            info.path = new_path
            self.levels[next_level].append(info)
        self.levels[next_level].sort(key=lambda block: block.min_key)
        self.levels[level] = []
        if next_level < NUM_LEVELS - 1 and self.should_compact(next_level):
            self._compact_level(next_level)

    def close(self) -> None:
        """Stop the compaction worker, waiting for a running compaction to finish."""
        with self.lock:
            if self._closed:
                return
            self._closed = True
            self._wakeup.set()
            worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join()
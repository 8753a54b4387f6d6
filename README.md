# riverkv

riverkv is a small key-value store. Every write is appended to a write-ahead
log first and then applied to an in-memory table. The memory table is
checkpointed to disk every half second and written out as a block file in an
LSM tree once it grows past 32 MB (and again when the engine is closed). On
start-up the engine loads the latest checkpoint and replays the log entries
recorded after it.

It can be used as a library or run as an HTTP server.

## Installation

```
pip install riverkv
```

## Using the engine

```python
from riverkv.engine import Engine

with Engine("./data") as engine:
    engine.put(b"greeting", b"hello")
    print(engine.get(b"greeting"))   # b'hello'

    engine.delete(b"greeting")

    print(engine.stats())
```

`Engine(base_dir, max_mem_table_size=32 MiB, checkpoint_interval=0.5,
compaction_workers=4)` takes:

- `max_mem_table_size` – bytes of keys and values held in memory before a
  background flush to the tree is requested
- `checkpoint_interval` – seconds between background checkpoints
- `compaction_workers` – number of compaction worker threads

Keys and values are bytes. `get` looks in the memory table first and then in
the tree, newest level first; it raises `KeyNotFoundError` (from
`riverkv.block`) when the key is absent. Any operation on a closed engine
raises `EngineClosedError`. `checkpoint()` writes a checkpoint on demand,
`stats()` returns an `EngineStats` (memory table size and key count,
`CompactionStats`, and block sizes and counts for each of the seven levels),
and `run_compaction()` runs one compaction cycle. `close()` checkpoints,
flushes the memory table and stops the background threads.

The data directory holds:

- `wal/` – the write-ahead log files, named `<timestamp>.wal`
- `checkpoint/checkpoint.json` – the latest snapshot of the memory table
- `data/L0` … `data/L6` – the block files of the LSM tree

## Other modules

- `riverkv.block` – `Block`, a sorted set of key-value pairs with a fixed
  binary header (SHA-256 block id, sizes, creation time), key range and data
  section; `encode`/`decode` write and read it on binary streams.
- `riverkv.wal` – `WAL`, the append-only log with CRC-32C checked records;
  `replay(from_timestamp)` yields `WALEntry` objects oldest first.
- `riverkv.checkpoint` – `Checkpoint`, which saves and loads the memory
  table as JSON with an atomic rename.
- `riverkv.lsm` – `LSMTree`, the seven levels of block files.
- `riverkv.compaction` – `CompactionManager`, which merges the blocks of a
  level into one block in the next level on worker threads.
- `riverkv.manifest` – `Manifest`, a JSON record of level files, the current
  log file and the last checkpoint time.
- `riverkv.encoding` – `Fixed` (little-endian ints, floats and bools, chosen
  by `FixedKind`) and `StringCodec` (offsets followed by UTF-8 bytes) column
  encoders.
- `riverkv.compress` – `LZ4Compressor`, raw LZ4 block compression.
- `riverkv.mmap_file` – `MmapFile` for memory-mapped reads and `MmapBlock`,
  an indexed view of a file of length-prefixed entries.

## Running the server

```
riverkv-server --data-dir ./data --http-addr :8080
```

Endpoints:

| Method | Path                | Result                                      |
|--------|---------------------|---------------------------------------------|
| any    | `/health`           | `OK`                                        |
| GET    | `/get?key=NAME`     | the stored value, or 404 if it is missing   |
| POST   | `/put?key=NAME`     | stores the request body, answers `OK`       |
| DELETE | `/delete?key=NAME`  | removes the key, answers `OK`               |
| GET    | `/stats`            | engine statistics as JSON                   |

A missing `key` parameter gives 400, a wrong method 405 and an unknown path 404.

Stop the server with Ctrl-C or SIGTERM; the engine is checkpointed, flushed
and closed before the process exits. On systems with SIGUSR2, that signal
starts a new server process with the same data directory and address and
waits up to ten seconds for it to report ready (by SIGUSR1) before shutting
down. The new process binds the address while the old one still holds it,
so on most systems it cannot start until the old server is gone.

## Benchmarking a running server

```
riverkv-benchmark --server http://localhost:8080 --inserts 100000 --queries 1000 --threads 4
```

Further options are `--value-size` (bytes per value, default 100) and
`--report-interval` (progress line every N inserts, every N/10 queries,
default 1000). The tool first inserts random values, then reads back randomly
chosen keys, and prints throughput, average, minimum, maximum, P95 and P99
latency and the error count for each phase.

## Limitations

- Deleting a key removes it from the memory table only. A value that has
  already been flushed to a block file stays readable after a delete.
- Compaction does not run on its own: the engine schedules it only when
  `run_compaction()` is called, and then only for a level whose blocks have
  reached 75 % of that level's size limit (48 MB for level 0).
- The manifest, the column encoders, the LZ4 compressor and the mmap readers
  are standalone; the engine does not use them.

## Running the tests

```
pip install "riverkv[test]"
pytest
```
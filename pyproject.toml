[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "riverkv"
version = "0.1.0"
description = "A key-value store with a write-ahead log, checkpoints, an LSM tree of block files and an HTTP front end"
requires-python = ">=3.10"
dependencies = [
    "lz4",
]
keywords = [
    "key-value",
    "storage-engine",
    "lsm-tree",
    "write-ahead-log",
    "database",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Database Engines/Servers",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
riverkv-server = "riverkv.server:main"
riverkv-benchmark = "riverkv.benchmark:main"

[tool.hatch.build.targets.wheel]
packages = ["riverkv"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true

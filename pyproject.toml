[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fusedb"
version = "0.1.0"
description = "Storage engine building blocks: in-memory mutation skiplist, immutable sorted segment files, bloom filters and zstd dictionary compression"
requires-python = ">=3.10"
keywords = ["database", "storage-engine", "lsm", "memtable", "skiplist", "bloom-filter", "zstd", "segment"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Database Engines/Servers",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "zstandard",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["fusedb"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true

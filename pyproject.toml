[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "chronicle_queue"
version = "0.1.0"
description = "Persisted, memory-mapped, segment-based messaging queue with a single publisher and named subscribers"
requires-python = ">=3.10"
dependencies = []
keywords = ["queue", "mmap", "messaging", "ipc", "journal", "persistence"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["chronicle_queue"]

[tool.pytest.ini_options]
addopts = "-ra"

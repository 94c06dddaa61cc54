[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gossipkit"
version = "0.1.0"
description = "Building blocks for gossip-based publish/subscribe: seen-message caches, subscription filters, validation pipelines, tracing and topic events."
requires-python = ">=3.10"
dependencies = []
keywords = ["pubsub", "gossip", "gossipsub", "p2p", "tracing", "validation"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
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
packages = ["gossipkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true

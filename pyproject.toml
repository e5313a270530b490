[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "eventmesh-runtime"
version = "0.1.0"
description = "Runtime core of an event mesh node: consumer and producer groups, client registration, request validation, webhook push delivery and a debug profiling server."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "event-mesh",
    "messaging",
    "pubsub",
    "webhook",
    "cloudevents",
    "consumer-group",
]
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
    "Topic :: System :: Distributed Computing",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["eventmesh_runtime"]

[tool.hatch.build.targets.sdist]
include = ["eventmesh_runtime", "tests", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true

[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "flagrelay"
version = "0.1.0"
description = "Feature flag daemon building blocks: in-process telemetry recording, subscription multiplexing and a runtime that wires sync sources to services"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = ["feature-flags", "telemetry", "metrics", "subscriptions", "sync"]
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
    "Topic :: Software Development :: Libraries",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
flagrelay = "flagrelay.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["flagrelay"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true

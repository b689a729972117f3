[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "copytrade"
version = "0.1.0"
description = "Domain and persistence layer for a copy-trading platform: users, strategies, offers, subscriptions, trades and batch trade imports."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "copy-trading",
    "trading",
    "investment",
    "strategies",
    "subscriptions",
    "repository",
    "import",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Financial and Insurance Industry",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Office/Business :: Financial :: Investment",
    "Topic :: Database",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["copytrade"]

[tool.hatch.build.targets.sdist]
include = ["copytrade", "tests"]

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
warn_redundant_casts = true

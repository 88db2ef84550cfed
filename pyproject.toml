[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "settlechat"
version = "0.1.0"
description = "Room-based chat server with WebSocket clients, an event bus over NATS subjects, and message history kept in SQLite."
requires-python = ">=3.10"
keywords = ["chat", "websocket", "nats", "pubsub", "event-bus", "chat-rooms", "aiohttp", "sqlite"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Web Environment",
    "Framework :: AsyncIO",
    "Framework :: aiohttp",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Chat",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
]
dependencies = [
    "aiohttp",
    "aiosqlite",
    "bcrypt",
    "python-dotenv",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
settlechat = "settlechat.server:main"

[tool.hatch.build.targets.wheel]
packages = ["settlechat"]

[tool.hatch.build.targets.sdist]
include = ["settlechat", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
ignore_missing_imports = true

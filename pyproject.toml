[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "realtimekit"
version = "0.1.0"
description = "Building blocks for real-time WebSocket services on Starlette with Redis Pub/Sub fan-out, token authentication and request coalescing."
requires-python = ">=3.10"
keywords = ["websocket", "realtime", "redis", "pubsub", "starlette", "asyncio", "coalescing"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "starlette>=0.37",
    "redis>=5.0.1",
    "uvicorn>=0.29",
]

[project.optional-dependencies]
test = [
    "pytest>=8.0",
    "pytest-asyncio>=0.23",
    "httpx>=0.27",
]

[project.scripts]
realtimekit-chat = "realtimekit.basic_chat:main"

[tool.hatch.build.targets.wheel]
packages = ["realtimekit"]

[tool.hatch.build.targets.sdist]
include = ["realtimekit", "tests"]

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

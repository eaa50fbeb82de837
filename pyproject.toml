[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tlsuv"
version = "0.1.0"
description = "TLS client streams, a chainable TLS link layer and a WebSocket client over pluggable transports"
requires-python = ">=3.10"
keywords = ["tls", "ssl", "websocket", "stream", "asyncio", "networking"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Framework :: AsyncIO",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Internet",
    "Topic :: Security :: Cryptography",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "h11",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["tlsuv"]

[tool.pytest.ini_options]
addopts = "-ra"

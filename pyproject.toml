[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mcpclient"
version = "0.1.0"
description = "Asyncio client for the Model Context Protocol over stdio and SSE transports"
requires-python = ">=3.10"
keywords = ["mcp", "model context protocol", "json-rpc", "sse", "client", "asyncio"]
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
    "Framework :: AsyncIO",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "httpx",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["mcpclient"]

[tool.pytest.ini_options]
addopts = "-ra"

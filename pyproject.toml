[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "flare-im"
version = "0.1.0"
description = "Server-side core of an instant messaging toolkit: configuration, connection management, handlers and message processing"
requires-python = ">=3.10"
dependencies = []
keywords = ["im", "messaging", "chat", "server", "asyncio"]
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
    "Topic :: Communications :: Chat",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["flare_im"]

[tool.pytest.ini_options]
addopts = "-ra"

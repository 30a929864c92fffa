[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "scannode"
version = "0.1.0"
description = "Building blocks for a scan node: service lifecycle, content storage, bot registry loading, deduplication and release updates."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "scan-node",
    "services",
    "ipfs",
    "bloom-filter",
    "sharding",
    "registry",
    "updater",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["scannode"]

[tool.hatch.build.targets.sdist]
include = ["scannode", "tests", "README.md", "pyproject.toml"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

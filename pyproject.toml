[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "coilnet"
version = "2.10.0"
description = "Pod networking runners: a CNI request handler, an address block garbage collector and a route synchroniser"
requires-python = ">=3.10"
dependencies = []
keywords = ["cni", "ipam", "egress", "nat", "routing", "networking"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["coilnet"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ssptransport"
version = "0.1.0"
description = "State-synchronisation transport over UDP: compressed, fragmented diffs with acknowledgements, RTT estimation and roaming"
requires-python = ">=3.10"
dependencies = []
keywords = ["udp", "transport", "state synchronization", "fragmentation", "roaming"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["ssptransport"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "scanprobe"
version = "0.1.0"
description = "Building blocks for stateless IPv4 scanning: address sharding, packet headers, UDP/UPnP probes, address filtering and scan metadata"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "network",
    "scanner",
    "ipv4",
    "udp",
    "upnp",
    "ssdp",
    "probe",
    "sharding",
    "checksum",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Monitoring",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["scanprobe"]

[tool.hatch.build.targets.sdist]
include = [
    "scanprobe",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true

[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "plpncp"
version = "1.0.25"
description = "Serial framing, link layer and print-service client for talking to Psion handhelds"
requires-python = ">=3.10"
dependencies = [
    "pyserial",
]
keywords = ["psion", "epoc", "sibo", "plp", "serial", "crc", "link"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["plpncp"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

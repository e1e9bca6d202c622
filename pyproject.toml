[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tcpscratch"
version = "0.1.0"
description = "A minimal user-space TCP responder over a Linux TUN device"
requires-python = ">=3.10"
dependencies = []
keywords = ["tcp", "ipv4", "tun", "networking", "checksum"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
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

[project.scripts]
tcpscratch = "tcpscratch.server:main"

[tool.hatch.build.targets.wheel]
packages = ["tcpscratch"]

[tool.pytest.ini_options]
addopts = "-ra"

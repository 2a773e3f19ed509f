[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "relaygear"
version = "0.1.0"
description = "Building blocks for a layered proxy: SOCKS5, HTTP and fixed-target inbounds, rule-based routing, a direct outbound and per-user traffic accounting."
requires-python = ">=3.10"
keywords = ["proxy", "socks5", "http-proxy", "router", "tunnel", "traffic-accounting"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Networking",
]
dependencies = [
    "pymysql",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["relaygear"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

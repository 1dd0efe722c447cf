[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "meshproxy"
version = "0.1.0"
description = "Building blocks for a service-mesh node proxy: socket helpers, workload certificates, TLS contexts, logging control and test tooling."
requires-python = ">=3.10"
dependencies = [
    "cryptography",
]
keywords = [
    "service-mesh",
    "proxy",
    "mtls",
    "spiffe",
    "x509",
    "socks5",
    "prometheus",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: Security :: Cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["meshproxy"]

[tool.hatch.build.targets.sdist]
include = [
    "meshproxy",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true

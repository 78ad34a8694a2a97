[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cloudstore"
version = "0.1.0"
description = "Storefront logic for NAT VPS plans over SQLite: billing, balance, support tickets and PayPal checkout."
requires-python = ">=3.10"
dependencies = [
    "requests",
]
keywords = ["billing", "invoices", "paypal", "support-tickets", "vps", "sqlite"]
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
    "Topic :: Internet :: WWW/HTTP :: Dynamic Content",
    "Topic :: Office/Business :: Financial",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[tool.hatch.build.targets.wheel]
packages = ["cloudstore"]

[tool.hatch.build.targets.sdist]
include = ["cloudstore", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true

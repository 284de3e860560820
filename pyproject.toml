[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "irestore"
version = "0.1.0"
description = "Restore-session helpers: ftab and fls firmware formats, ASR image streaming, FDR proxying and shared utilities"
requires-python = ">=3.10"
dependencies = []
keywords = ["restore", "firmware", "ftab", "fls", "asr", "fdr", "plist"]
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
    "Topic :: System :: Recovery Tools",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["irestore"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

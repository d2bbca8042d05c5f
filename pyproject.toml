[build-system]
requires = ["setuptools>=61"]
build-backend = "setuptools.build_meta"

[project]
name = "nixgc"
version = "0.1.0"
description = "A generational copying garbage collector with rooted pointers, heap strings and arrays, plus JSON reading and writing for interpreter values"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "garbage-collector",
    "generational-gc",
    "copying-collector",
    "interpreter",
    "json",
]
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
    "Topic :: Software Development :: Interpreters",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
nixgc-bench = "nixgc.bench:main"

[tool.setuptools.packages.find]
include = ["nixgc*"]

[tool.pytest.ini_options]
addopts = "-ra"

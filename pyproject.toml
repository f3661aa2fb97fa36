[build-system]
requires = ["setuptools>=64"]
build-backend = "setuptools.build_meta"

[project]
name = "gpupool"
version = "0.1.0"
description = "Storage back ends for a GPU pool controller: agents, sessions, pools and permissions"
requires-python = ">=3.10"
dependencies = []
keywords = ["gpu", "scheduler", "storage", "sqlite", "controller"]
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
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.setuptools.packages.find]
include = ["gpupool*"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

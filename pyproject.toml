[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "blueprint_operator"
version = "0.1.0"
description = "Reconcilers for Blueprint, Addon, Manifest and Installation resources over an in-memory object store"
requires-python = ">=3.10"
keywords = ["kubernetes", "operator", "reconciler", "addons", "manifests", "cert-manager"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
]
dependencies = [
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["blueprint_operator"]

[tool.pytest.ini_options]
addopts = "-ra"

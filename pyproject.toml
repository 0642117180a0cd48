[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "oamcatalog"
version = "0.1.0"
description = "Reconciliation logic for OAM sidecar and rollout traits and the PodSpec workload, with admission webhook handlers"
requires-python = ">=3.10"
dependencies = []
keywords = ["oam", "kubernetes", "controller", "reconciler", "webhook", "trait", "workload"]
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
    "Topic :: System :: Systems Administration",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["oamcatalog"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true

[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "protodb-controller"
version = "0.1.0"
description = "Reconcile-loop controllers driven by store watch events, with a de-duplicating priority work queue and rate-limited retries."
requires-python = ">=3.10"
keywords = ["controller", "reconcile", "workqueue", "priority-queue", "rate-limiter", "watch"]
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
    "Topic :: Software Development :: Libraries :: Application Frameworks",
]
dependencies = [
    "sortedcontainers",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["protodb_controller"]

[tool.hatch.build.targets.sdist]
include = ["protodb_controller", "tests", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"

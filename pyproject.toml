[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "subnetlease"
version = "0.1.0"
description = "Per-host subnet lease allocation, watching and renewal for overlay networks, with an in-memory lease registry and a Kubernetes node-annotation manager."
requires-python = ">=3.10"
dependencies = []
keywords = ["subnet", "lease", "overlay", "network", "cidr", "ipv6", "kubernetes"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["subnetlease"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true

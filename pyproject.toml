[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ubiblk"
version = "0.2.0"
description = "Storage side of a virtio-blk device: virtqueue request parsing, queue processing, file-backed I/O channels and YAML configuration."
requires-python = ">=3.10"
dependencies = [
    "numpy",
    "pyyaml",
]
keywords = [
    "virtio",
    "virtio-blk",
    "vhost-user",
    "block device",
    "virtqueue",
    "storage",
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
    "Topic :: System :: Emulators",
    "Topic :: System :: Filesystems",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["ubiblk"]

[tool.hatch.build.targets.sdist]
include = [
    "ubiblk",
    "tests",
    "pyproject.toml",
]

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
warn_redundant_casts = true

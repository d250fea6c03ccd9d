[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ylinker"
version = "1.0.1"
description = "A small linker for 16-bit OMF object modules that produces DOS MZ executables or object libraries"
requires-python = ">=3.10"
dependencies = []
keywords = ["linker", "omf", "dos", "mz", "object-file", "library"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
ylink = "ylinker.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["ylinker"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

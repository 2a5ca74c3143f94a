[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "armreloc"
version = "0.1.0"
description = "Relocate ARM, Thumb and AArch64 instructions for inline function hooks on a simulated memory"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "arm",
    "thumb",
    "aarch64",
    "arm64",
    "inline-hook",
    "trampoline",
    "instruction-relocation",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Debuggers",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["armreloc"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
strict = true

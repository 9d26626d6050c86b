[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "symresolve"
version = "0.1.0"
description = "Resolve code addresses to symbol names using ELF, PE/COFF and Mach-O symbol tables."
requires-python = ">=3.10"
dependencies = []
keywords = ["symbols", "symbolication", "elf", "mach-o", "coff", "pe", "debugging", "backtrace"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Operating System :: POSIX :: Linux",
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
packages = ["symresolve"]

[tool.pytest.ini_options]
addopts = "-ra"

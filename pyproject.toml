[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "decompkit"
version = "0.1.0"
description = "Uniform loading of ELF, PE, PEF and raw executables, plus helper tools for decompilation workflows"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "decompilation",
    "elf",
    "pe",
    "pef",
    "reverse-engineering",
    "ida",
    "binary",
    "executable",
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
    "Topic :: Software Development :: Disassemblers",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
sigs2h = "decompkit.sigs2h:main"
dot2png = "decompkit.dot2png:main"
hfix = "decompkit.hfix:main"
lst2json = "decompkit.lst2json:main"

[tool.hatch.build.targets.wheel]
packages = ["decompkit"]

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

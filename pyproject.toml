[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "smoothfeedback"
version = "0.1.0"
description = "Optimal control problem definitions, collocation mesh functions and transcription to nonlinear programs"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = [
    "optimal control",
    "collocation",
    "nonlinear programming",
    "trajectory optimization",
    "numerical differentiation",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Scientific/Engineering :: Mathematics",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["smoothfeedback"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 120
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true

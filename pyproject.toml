[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "globalsfm"
version = "0.1.0"
description = "Global structure-from-motion stages: view graph calibration, rotation averaging, track establishment and global positioning"
requires-python = ">=3.10"
dependencies = [
    "numpy",
    "scipy",
]
keywords = [
    "structure-from-motion",
    "sfm",
    "rotation-averaging",
    "global-positioning",
    "photogrammetry",
    "3d-reconstruction",
    "computer-vision",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Image Processing",
    "Topic :: Scientific/Engineering :: Mathematics",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["globalsfm"]

[tool.hatch.build.targets.sdist]
include = [
    "globalsfm",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true

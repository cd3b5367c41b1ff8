[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "adnormalizer"
version = "0.1.0"
description = "HTTP service that normalizes VAST and VMAP ad responses and dispatches missing creatives for transcoding"
requires-python = ">=3.10"
keywords = ["vast", "vmap", "ads", "hls", "transcoding", "valkey", "redis"]
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
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: Multimedia :: Video",
]
dependencies = [
    "requests>=2.28",
    "redis>=4.5",
    "werkzeug>=2.3",
    "defusedxml>=0.7",
    "python-dotenv>=1.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
    "responses>=0.23",
]

[project.scripts]
ad-normalizer = "adnormalizer.app:main"

[tool.hatch.build.targets.wheel]
packages = ["adnormalizer"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true

[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "audiostream"
version = "0.1.0"
description = "Range-based streaming download and AES-128-CTR decryption of audio files"
requires-python = ">=3.10"
keywords = ["audio", "streaming", "range-set", "aes-ctr", "prefetch", "download"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Multimedia :: Sound/Audio",
]
dependencies = [
    "cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["audiostream"]

[tool.pytest.ini_options]
addopts = "-ra"

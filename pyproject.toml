[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "lkmedia"
version = "0.1.0"
description = "Real-time media helpers: RTP jitter buffering, sample building, Ogg/Opus reading, audio/video synchronization and region URL discovery"
requires-python = ">=3.10"
dependencies = []
keywords = ["rtp", "webrtc", "jitter-buffer", "opus", "ogg", "synchronization", "media"]
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
    "Topic :: Communications :: Conferencing",
    "Topic :: Multimedia :: Sound/Audio",
    "Topic :: Multimedia :: Video",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["lkmedia"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

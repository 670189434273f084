[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "lagwatch"
version = "0.1.0"
description = "Consumer lag monitoring core: cluster offset polling, offsets-topic decoding, ZooKeeper offset watching and module coordination"
requires-python = ">=3.10"
dependencies = []
keywords = ["kafka", "consumer", "lag", "monitoring", "offsets", "zookeeper"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["lagwatch"]

[tool.pytest.ini_options]
addopts = "-ra"

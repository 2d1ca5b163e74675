[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mrraft"
version = "0.1.0"
description = "A MapReduce framework whose master is replicated with the Raft consensus algorithm"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = ["mapreduce", "raft", "consensus", "distributed", "inverted-index"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
mrraft-master = "mrraft.cli:master_main"
mrraft-worker = "mrraft.cli:worker_main"
mrraft-raft-demo = "mrraft.cli:raft_demo_main"

[tool.hatch.build.targets.wheel]
packages = ["mrraft"]

[tool.pytest.ini_options]
addopts = "-ra"

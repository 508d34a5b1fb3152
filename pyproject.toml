[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "clusteragent"
version = "0.1.0"
description = "Cluster agent helpers for a snap-packaged Kubernetes: snap file access, tokens, dqlite and calico helpers, and API server proxy configuration"
requires-python = ">=3.10"
keywords = ["kubernetes", "cluster", "snap", "dqlite", "calico", "traefik"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Clustering",
]
dependencies = [
    "pyyaml",
    "watchdog",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["clusteragent"]

[tool.pytest.ini_options]
addopts = "-ra"

"""Cluster configuration loaded from a YAML file."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import yaml


@dataclass
class RaftSettings:
    nodes: list[str] = field(default_factory=list)
    election_timeout: int = 0
    election_timeout_random: int = 0
    heartbeat_interval: int = 0


@dataclass
class MasterSettings:
    n_master: int = 0
    files: list[str] = field(default_factory=list)
    n_reduce: int = 0


@dataclass
class WorkerSettings:
    n_worker: int = 0
    plugin: str = ""


@dataclass
class LogSettings:
    level: str = ""
    master_file: str = ""
    worker_file: str = ""


@dataclass
class Config:
    raft: RaftSettings = field(default_factory=RaftSettings)
    master: MasterSettings = field(default_factory=MasterSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    log: LogSettings = field(default_factory=LogSettings)


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"section {key!r} must be a mapping")
    return value


def _int(section: dict[str, Any], key: str) -> int:
    value = section.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key!r} must be an integer, got {value!r}")
    return value


def _str(section: dict[str, Any], key: str) -> str:
    value = section.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key!r} must be a string, got {value!r}")
    return value


def _str_list(section: dict[str, Any], key: str) -> list[str]:
    value = section.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"{key!r} must be a list of strings")
    return list(value)


def load_config(path) -> Config:
    """Read a YAML configuration file; missing keys keep their zero values."""
    with open(path, encoding="utf-8") as handle:
        data = yaml.safe_load(handle)
    if data is None:
        return Config()
    if not isinstance(data, dict):
        raise ValueError("configuration must be a mapping")

    raft = _section(data, "raft")
    master = _section(data, "master")
    worker = _section(data, "worker")
    log = _section(data, "log")
    return Config(
        raft=RaftSettings(
            nodes=_str_list(raft, "nodes"),
            election_timeout=_int(raft, "election_timeout"),
            election_timeout_random=_int(raft, "election_timeout_random"),
            heartbeat_interval=_int(raft, "heartbeat_interval"),
        ),
        master=MasterSettings(
            n_master=_int(master, "nMaster"),
            files=_str_list(master, "files"),
            n_reduce=_int(master, "nReduce"),
        ),
        worker=WorkerSettings(
            n_worker=_int(worker, "nWorker"),
            plugin=_str(worker, "plugin"),
        ),
        log=LogSettings(
            level=_str(log, "level"),
            master_file=_str(log, "masterfile"),
            worker_file=_str(log, "workerfile"),
        ),
    )
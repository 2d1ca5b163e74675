"""Map and reduce workers that take their tasks from the master."""

from __future__ import annotations

import heapq
import itertools
import json
import logging
import os
import random
import tempfile
import time
from dataclasses import dataclass
from operator import attrgetter
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional

from .logsetup import LOGGER_NAME
from .protocol import Args, Reply, ReplyKind, RequestKind
from .rpc import RpcClient, RpcError

_log = logging.getLogger(LOGGER_NAME)

_METHOD = "Master.rpc_handle"
_MAX_FAILURES = 10
_WAIT_SECONDS = 0.5
_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193
_ENCODING = "utf-8"
_ERRORS = "surrogateescape"


@dataclass(frozen=True)
class KeyValue:
    """One intermediate pair emitted by a map function."""

    key: str
    value: str


MapFunc = Callable[[str, str], Iterable[Any]]
ReduceFunc = Callable[[str, list], str]

_by_key = attrgetter("key")


def ihash(key: str) -> int:
    """Non-negative 32-bit FNV-1a hash of ``key``, used to pick a reduce task."""
    value = _FNV_OFFSET
    for byte in key.encode(_ENCODING, _ERRORS):
        value ^= byte
        value = (value * _FNV_PRIME) & 0xFFFFFFFF
    return value & 0x7FFFFFFF


def _as_key_value(item: Any) -> KeyValue:
    if isinstance(item, KeyValue):
        return item
    key, value = item
    return KeyValue(key, value)


def merge_sorted(streams: Iterable[Iterable[KeyValue]]) -> Iterator[KeyValue]:
    """Merge streams already sorted by key into one stream sorted by key."""
    return heapq.merge(*streams, key=_by_key)


def _write_atomically(target: Path, text: str) -> None:
    fd, temp_name = tempfile.mkstemp(prefix=target.name, dir=target.parent)
    try:
        with os.fdopen(fd, "w", encoding=_ENCODING, errors=_ERRORS) as handle:
            handle.write(text)
        os.replace(temp_name, target)
    except BaseException:
        try:
            os.unlink(temp_name)
        except OSError:
            pass
        raise


def _read_intermediate(path: Path) -> Iterator[KeyValue]:
    with open(path, encoding=_ENCODING, errors=_ERRORS) as handle:
        for line in handle:
            if line.strip():
                record = json.loads(line)
                yield KeyValue(record["Key"], record["Value"])


def _directory(directory) -> Path:
    return Path(directory) if directory is not None else Path(".")


def run_map(task_id: int, filename, n_reduce: int, mapf: MapFunc, directory=None) -> list[Path]:
    """Run one map task and write its ``mr-<task>-<reduce>`` files.

    Each file holds one JSON object per line, sorted by key.
    """
    if n_reduce <= 0:
        raise ValueError(f"n_reduce must be positive, got {n_reduce}")
    contents = Path(filename).read_text(encoding=_ENCODING, errors=_ERRORS)
    pairs = sorted((_as_key_value(item) for item in mapf(str(filename), contents)), key=_by_key)

    buckets: list[list[KeyValue]] = [[] for _ in range(n_reduce)]
    for pair in pairs:
        buckets[ihash(pair.key) % n_reduce].append(pair)

    out = _directory(directory)
    paths = []
    for reduce_id, bucket in enumerate(buckets):
        target = out / f"mr-{task_id}-{reduce_id}"
        text = "".join(
            json.dumps({"Key": pair.key, "Value": pair.value}) + "\n" for pair in bucket
        )
        _write_atomically(target, text)
        paths.append(target)
    _log.info("map task finished", extra={"fields": {"ID": task_id}})
    return paths


def run_reduce(task_id: int, n_map: int, reducef: ReduceFunc, directory=None) -> Path:
    """Run one reduce task over every map output and write ``mr-out-<task>``."""
    out = _directory(directory)
    merged = merge_sorted(
        _read_intermediate(out / f"mr-{map_id}-{task_id}") for map_id in range(n_map)
    )
    lines = []
    for key, group in itertools.groupby(merged, key=_by_key):
        values = [pair.value for pair in group]
        lines.append(f"{key} {reducef(key, values)}\n")
    target = out / f"mr-out-{task_id}"
    _write_atomically(target, "".join(lines))
    _log.info("reduce task finished", extra={"fields": {"ID": task_id}})
    return target


class MasterClient:
    """Connections to every master replica, finding the leader on each call."""

    def __init__(self, addrs) -> None:
        self._clients: list[RpcClient] = []
        try:
            for address in addrs:
                self._clients.append(RpcClient(address))
        except RpcError as exc:
            self.close()
            raise RpcError(f"master servers are not running: {exc}") from exc

    def call(self, args: Args) -> Optional[Reply]:
        """Send ``args`` to the leader; ``None`` once no master can answer."""
        failures = 0
        retry = True
        while retry:
            retry = False
            for index, client in enumerate(self._clients):
                _log.debug("worker sending request", extra={"fields": {"server": index}})
                try:
                    reply = client.call(_METHOD, args)
                except RpcError:
                    failures += 1
                    if failures < _MAX_FAILURES:
                        retry = True
                    else:
                        _log.debug("master servers closed")
                    continue
                if reply.reply_type == ReplyKind.WRONG_LEADER:
                    _log.debug("worker: not the leader")
                    continue
                if reply.reply_type == ReplyKind.TIMEOUT:
                    _log.debug("worker: request timed out")
                    retry = True
                    break
                _log.debug("worker request succeeded")
                return reply
        return None

    def close(self) -> None:
        for client in self._clients:
            client.close()

    def __enter__(self) -> MasterClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def _new_request_id() -> int:
    return random.getrandbits(63)


def _report(client: MasterClient, task_id: int, kind: RequestKind) -> None:
    client.call(Args(rand_id=_new_request_id(), send_type=kind, id=task_id))


def run_worker(addrs, mapf: MapFunc, reducef: ReduceFunc, directory=None) -> None:
    """Ask the masters for tasks and run them until the job is done."""
    with MasterClient(addrs) as client:
        while True:
            args = Args(rand_id=_new_request_id(), send_type=RequestKind.REQUEST)
            _log.info("worker requesting a task")
            reply = client.call(args)
            if reply is None:
                return
            kind = reply.reply_type
            if kind == ReplyKind.REDUCE:
                _log.info("got reduce task", extra={"fields": {"ID": reply.id}})
                run_reduce(reply.id, reply.n_map, reducef, directory)
                _report(client, reply.id, RequestKind.DONE_REDUCE)
            elif kind == ReplyKind.MAP:
                _log.info("got map task", extra={"fields": {"ID": reply.id}})
                run_map(reply.id, reply.file, reply.n_reduce, mapf, directory)
                _report(client, reply.id, RequestKind.DONE_MAP)
            elif kind == ReplyKind.DONE:
                _log.info("job finished", extra={"fields": {"ID": reply.id}})
                return
            elif kind == ReplyKind.WAIT:
                time.sleep(_WAIT_SECONDS)
"""Commands that start master replicas, workers, or a bare Raft cluster."""

from __future__ import annotations

import argparse
import contextlib
import logging
import queue
import threading
import time
from pathlib import PurePath
from typing import Callable, Optional

import yaml

from .config import Config, load_config
from .invertedindex import map_document, reduce_documents
from .logsetup import LOGGER_NAME, init_logger
from .master import Master
from .node import Raft
from .rpc import RpcServer
from .worker import run_worker

_log = logging.getLogger(LOGGER_NAME)

_MAX_RAFT_STATE = 100
DEMO_HOST = "127.0.0.1"
DEMO_BASE_PORT = 8000
DEMO_PEERS = 3
DEMO_WAIT_SECONDS = 100.0
DEMO_COMMAND = "hello world"

_APPS = {
    "invertedindex": (map_document, reduce_documents),
}


class RuntimeMaster:
    """Starts ``n`` master replicas, then connects them to each other."""

    def __init__(self, n, n_reduce, files, addrs, on_done: Optional[Callable[[], None]] = None):
        addrs = list(addrs)
        if n < 1:
            raise ValueError(f"need at least one master, got {n}")
        if n > len(addrs):
            raise ValueError(f"{n} masters need {n} addresses, got {len(addrs)}")
        self.n = n
        self.addrs = addrs[:n]
        self.masters: list[Master] = []
        try:
            for me in range(n):
                self.masters.append(
                    Master(self.addrs, me, None, _MAX_RAFT_STATE, files, n_reduce, on_done)
                )
        except BaseException:
            for master in self.masters:
                master.kill()
            raise
        for master in self.masters:
            threading.Thread(target=master.open, daemon=True).start()


def load_app(name: str):
    """Return the ``(map, reduce)`` functions of the application called ``name``.

    The directory and extension of ``name`` are ignored, as are case,
    underscores and dashes, so ``mrapp/Inverted_index.so`` names the
    inverted index.
    """
    key = PurePath(name).stem.replace("_", "").replace("-", "").lower()
    try:
        return _APPS[key]
    except KeyError:
        raise ValueError(f"unknown application {name!r}") from None


def _config_parser(description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument("--config", default="config.yaml", help="path of the YAML configuration")
    return parser


def _load(path: str) -> Config:
    try:
        return load_config(path)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise SystemExit(f"failed to load configuration: {exc}") from exc


def master_main(argv=None) -> int:
    """Run the configured master replicas until the job is finished."""
    args = _config_parser("Start the master replicas.").parse_args(argv)
    config = _load(args.config)
    init_logger(config.log.level, config.log.master_file)
    _log.info("service started")

    n = config.master.n_master
    finished = threading.Semaphore(0)
    RuntimeMaster(n, config.master.n_reduce, config.master.files, config.raft.nodes,
                  on_done=finished.release)
    for _ in range(n):
        finished.acquire()
    return 0


def worker_main(argv=None) -> int:
    """Run the configured number of workers until the job is finished."""
    args = _config_parser("Start map/reduce workers.").parse_args(argv)
    config = _load(args.config)
    plugin = config.worker.plugin
    try:
        mapf, reducef = load_app(plugin)
    except ValueError as exc:
        raise SystemExit(f"cannot load plugin {plugin}: {exc}") from exc

    init_logger(config.log.level, config.log.worker_file)
    _log.info("service started")

    threads = [
        threading.Thread(target=run_worker, args=(config.raft.nodes, mapf, reducef), daemon=True)
        for _ in range(config.worker.n_worker)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return 0


def _print_applied(me: int, applied: queue.Queue, stop: threading.Event) -> None:
    while not stop.is_set():
        try:
            msg = applied.get(timeout=0.1)
        except queue.Empty:
            continue
        print(f"[Raft {me}] Apply: {msg}", flush=True)


def raft_demo_main(argv=None) -> int:
    """Start a small Raft cluster, wait, then submit a command to every peer."""
    parser = argparse.ArgumentParser(description="Run a local Raft cluster.")
    parser.add_argument("--peers", type=int, default=DEMO_PEERS)
    parser.add_argument("--wait", type=float, default=DEMO_WAIT_SECONDS,
                        help="seconds to wait before submitting commands")
    parser.add_argument("--host", default=DEMO_HOST)
    parser.add_argument("--base-port", type=int, default=DEMO_BASE_PORT)
    args = parser.parse_args(argv)
    if args.peers < 1:
        parser.error("--peers must be at least 1")
    if args.wait < 0:
        parser.error("--wait must not be negative")

    addrs = [f"{args.host}:{args.base_port + i}" for i in range(args.peers)]
    stop = threading.Event()
    with contextlib.ExitStack() as stack:
        stack.callback(stop.set)
        rafts = []
        for me, address in enumerate(addrs):
            applied: queue.Queue = queue.Queue()
            raft = Raft(addrs, me, None, applied)
            server = RpcServer(address)
            server.register("Raft", raft)
            server.start()
            stack.callback(server.close)
            stack.callback(raft.kill)
            rafts.append(raft)
            threading.Thread(target=_print_applied, args=(me, applied, stop), daemon=True).start()

        for raft in rafts:
            threading.Thread(target=raft.open, daemon=True).start()

        time.sleep(args.wait)

        for raft in rafts:
            index, term, is_leader = raft.start(DEMO_COMMAND)
            print(f"Index: {index}, Term: {term}, IsLeader: {str(is_leader).lower()}", flush=True)
    return 0
"""A replicated master: task scheduling agreed on through Raft."""

from __future__ import annotations

import dataclasses
import logging
import queue
import threading
import time
from typing import Callable, Optional

from .logsetup import LOGGER_NAME
from .node import Raft
from .persister import Persister
from .protocol import Args, Reply, ReplyKind
from .rpc import RpcServer
from .scheduler import Op, TaskScheduler

_log = logging.getLogger(LOGGER_NAME)

_COMMIT_WAIT_SECONDS = 5.0
_KILL_GRACE_SECONDS = 1.0
_APPLY_POLL_SECONDS = 0.1


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class Master:
    """One master replica.

    Worker requests are appended to the Raft log and handled by every
    replica once committed, so all replicas hand out the same tasks. The
    replica serves both ``"Master"`` and ``"Raft"`` on ``servers[me]``.
    """

    def __init__(self, servers, me, persister: Optional[Persister], max_raft_state,
                 files, n_reduce, on_done: Optional[Callable[[], None]] = None):
        self.me = me
        self.max_raft_state = max_raft_state
        self._on_done = on_done
        self._request_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._kill_lock = threading.Lock()
        self._dead = threading.Event()
        self._replies: dict[int, Reply] = {}
        self._waiters: dict[int, queue.Queue] = {}

        self._apply_queue: queue.Queue = queue.Queue()
        self._raft = Raft(servers, me, persister, self._apply_queue)
        self._scheduler = TaskScheduler(files, n_reduce, on_finished=self.kill)

        self._server = RpcServer(servers[me])
        self._server.register("Master", self)
        self._server.register("Raft", self._raft)
        try:
            self._server.start()
        except OSError as exc:
            _log.error("cannot listen", extra={"fields": {"error": str(exc)}})
            raise
        _log.info("master listening", extra={"fields": {"id": me}})

        threading.Thread(target=self._apply_loop, daemon=True).start()
        _log.info("master started", extra={"fields": {"id": me}})

    def rpc_handle(self, args: Args) -> Reply:
        """Handle one worker request once it has been committed."""
        if self.killed():
            return Reply(reply_type=ReplyKind.DONE)
        fields = {"me": self.me, "send_type": int(args.send_type), "id": args.id}
        with self._request_lock:
            _, is_leader = self._raft.get_state()
            if not is_leader:
                _log.debug("not the leader", extra={"fields": fields})
                return Reply(reply_type=ReplyKind.WRONG_LEADER)

            _log.debug("request received", extra={"fields": fields})
            with self._state_lock:
                cached = self._replies.get(args.rand_id)
                if cached is not None:
                    _log.debug("request already handled", extra={"fields": fields})
                    return dataclasses.replace(cached)
                waiter: queue.Queue = queue.Queue(maxsize=1)
                self._waiters[args.rand_id] = waiter

            try:
                op = Op(send_type=args.send_type, id=args.id, timestamp=_now_ms(),
                        rand_id=args.rand_id)
                _, _, is_leader = self._raft.start(op)
                if not is_leader:
                    _log.debug("not the leader", extra={"fields": fields})
                    return Reply(reply_type=ReplyKind.WRONG_LEADER)
                try:
                    reply = waiter.get(timeout=_COMMIT_WAIT_SECONDS)
                except queue.Empty:
                    _log.debug("commit timed out", extra={"fields": fields})
                    return Reply(reply_type=ReplyKind.TIMEOUT)
            finally:
                with self._state_lock:
                    if self._waiters.get(args.rand_id) is waiter:
                        del self._waiters[args.rand_id]
            _log.debug("returning reply", extra={"fields": fields})
            return dataclasses.replace(reply)

    def _apply_loop(self) -> None:
        while not self.killed():
            try:
                msg = self._apply_queue.get(timeout=_APPLY_POLL_SECONDS)
            except queue.Empty:
                continue
            if not msg.command_valid or not isinstance(msg.command, Op):
                continue
            op = msg.command
            _log.debug("applying command", extra={"fields": {"me": self.me}})
            reply = self._scheduler.handle(op)
            with self._state_lock:
                self._replies[op.rand_id] = reply
                waiter = self._waiters.get(op.rand_id)
            if waiter is not None:
                try:
                    waiter.put_nowait(reply)
                except queue.Full:
                    pass

    def open(self) -> None:
        """Connect to the other replicas and start taking part in elections."""
        self._raft.open()

    def kill(self) -> None:
        """Shut the replica down after a short grace period for workers."""
        with self._kill_lock:
            if self._dead.is_set():
                return
            self._dead.set()
        time.sleep(_KILL_GRACE_SECONDS)
        self._raft.kill()
        self._server.close()
        if self._on_done is not None:
            self._on_done()
        _log.info("master stopped", extra={"fields": {"id": self.me}})

    def killed(self) -> bool:
        return self._dead.is_set()
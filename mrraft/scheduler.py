"""Assignment of map and reduce tasks to workers."""

from __future__ import annotations

import heapq
import logging
import threading
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Optional

from .logsetup import LOGGER_NAME
from .protocol import Reply, ReplyKind, RequestKind

_log = logging.getLogger(LOGGER_NAME)

MS_PER_SECOND = 1000
MAP_TIMEOUT_MS = 10 * MS_PER_SECOND
REDUCE_TIMEOUT_MS = 5 * MS_PER_SECOND


class TaskStatus(IntEnum):
    """Progress of a single map or reduce task."""

    PENDING = 0
    WORKING = 1
    DONE = 2
    ERR = 3
    TIMEOUT = 4


@dataclass(frozen=True)
class Op:
    """A worker request as agreed on through the replicated log."""

    send_type: int = RequestKind.REQUEST
    id: int = 0
    timestamp: int = 0
    rand_id: int = 0


class TaskScheduler:
    """Hands out map tasks, then reduce tasks, and tracks their completion.

    Tasks wait in heaps ordered by the time they were last handed out, so
    the task assigned longest ago is examined first. A task still being
    worked on is handed out again once its timeout has passed.
    """

    def __init__(self, files, n_reduce, on_finished: Optional[Callable[[], None]] = None):
        self.files = list(files)
        self.n_map = len(self.files)
        self.n_reduce = n_reduce
        self._on_finished = on_finished
        self._lock = threading.RLock()

        self.map_status = [TaskStatus.PENDING] * self.n_map
        self.map_done_count = 0
        self.map_is_done = False
        self._map_heap = [(0, task_id) for task_id in range(self.n_map)]
        heapq.heapify(self._map_heap)

        self.reduce_status = [TaskStatus.PENDING] * self.n_reduce
        self.reduce_done_count = 0
        self.reduce_is_done = False
        self._reduce_heap = [(0, task_id) for task_id in range(self.n_reduce)]
        heapq.heapify(self._reduce_heap)

    def handle(self, op: Op) -> Reply:
        """Apply one committed request and return the reply for the worker."""
        with self._lock:
            if self.reduce_is_done:
                return Reply(reply_type=ReplyKind.DONE)
            map_is_done = self.map_is_done
        _log.debug(
            "handling request",
            extra={"fields": {"send_type": int(op.send_type), "id": op.id}},
        )
        reply = Reply()
        if op.send_type == RequestKind.DONE_MAP:
            self.done_map(op)
        elif op.send_type == RequestKind.DONE_REDUCE:
            self.done_reduce(op)
        elif op.send_type == RequestKind.REQUEST:
            if not map_is_done:
                self.request_map(op, reply)
            else:
                self.request_reduce(op, reply)
        return reply

    @staticmethod
    def _check_id(task_id: int, count: int, kind: str) -> None:
        if not 0 <= task_id < count:
            raise IndexError(f"{kind} task {task_id} out of range 0..{count - 1}")

    def done_map(self, op: Op) -> None:
        """Mark a map task finished; the map phase ends when all are."""
        self._check_id(op.id, self.n_map, "map")
        _log.info("map task done", extra={"fields": {"id": op.id}})
        with self._lock:
            if self.map_status[op.id] != TaskStatus.DONE:
                self.map_status[op.id] = TaskStatus.DONE
                self.map_done_count += 1
                if self.map_done_count == self.n_map:
                    self.map_is_done = True

    def done_reduce(self, op: Op) -> None:
        """Mark a reduce task finished; the job ends when all are."""
        self._check_id(op.id, self.n_reduce, "reduce")
        _log.info("reduce task done", extra={"fields": {"id": op.id}})
        finished = False
        with self._lock:
            if self.reduce_status[op.id] != TaskStatus.DONE:
                self.reduce_status[op.id] = TaskStatus.DONE
                self.reduce_done_count += 1
                if self.reduce_done_count == self.n_reduce:
                    self.reduce_is_done = True
                    finished = True
        if finished and self._on_finished is not None:
            self._on_finished()

    def _assign(self, heap, status, timeout_ms: int, op: Op, reply: Reply,
                empty_kind: ReplyKind) -> Optional[int]:
        while True:
            if not heap:
                reply.reply_type = empty_kind
                return None
            stamp, task_id = heapq.heappop(heap)
            if status[task_id] == TaskStatus.WORKING and op.timestamp - stamp > timeout_ms:
                status[task_id] = TaskStatus.TIMEOUT
            current = status[task_id]
            if current == TaskStatus.DONE:
                continue
            if current == TaskStatus.WORKING:
                reply.reply_type = ReplyKind.WAIT
                heapq.heappush(heap, (stamp, task_id))
                return None
            status[task_id] = TaskStatus.WORKING
            heapq.heappush(heap, (op.timestamp, task_id))
            reply.id = task_id
            return task_id

    def request_map(self, op: Op, reply: Reply) -> Reply:
        """Fill ``reply`` with a map task, or tell the worker to wait."""
        reply.reply_type = ReplyKind.MAP
        reply.n_reduce = self.n_reduce
        reply.n_map = self.n_map
        with self._lock:
            task_id = self._assign(
                self._map_heap, self.map_status, MAP_TIMEOUT_MS, op, reply, ReplyKind.WAIT
            )
        if task_id is not None:
            reply.file = self.files[task_id]
            _log.info("assigned map task", extra={"fields": {"id": task_id}})
        return reply

    def request_reduce(self, op: Op, reply: Reply) -> Reply:
        """Fill ``reply`` with a reduce task, a wait, or the end of the job."""
        reply.reply_type = ReplyKind.REDUCE
        reply.n_reduce = self.n_reduce
        reply.n_map = self.n_map
        with self._lock:
            task_id = self._assign(
                self._reduce_heap, self.reduce_status, REDUCE_TIMEOUT_MS, op, reply,
                ReplyKind.DONE,
            )
        if task_id is not None:
            _log.info("assigned reduce task", extra={"fields": {"id": task_id}})
        return reply
"""Request and reply types exchanged between workers and the master."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class ReplyKind(IntEnum):
    """What the master tells a worker to do next."""

    WAIT = 0
    MAP = 1
    REDUCE = 2
    DONE = 3
    TIMEOUT = 4  # the worker should retry with the same request id
    WRONG_LEADER = 5


class RequestKind(IntEnum):
    """What a worker asks of, or reports to, the master."""

    REQUEST = 0
    DONE_MAP = 1
    DONE_REDUCE = 2
    ERROR = 3


@dataclass
class Args:
    """A worker's request; ``rand_id`` makes retries idempotent."""

    rand_id: int = 0
    send_type: RequestKind = RequestKind.REQUEST
    id: int = 0


@dataclass
class Reply:
    """The master's answer to an :class:`Args` request."""

    err: str = ""
    reply_type: ReplyKind = ReplyKind.WAIT
    id: int = 0
    file: str = ""
    n_reduce: int = 0
    n_map: int = 0
"""Messages exchanged between Raft peers and delivered to the state machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class Role(IntEnum):
    """The role a Raft peer currently plays."""

    FOLLOWER = 0
    CANDIDATE = 1
    LEADER = 2


@dataclass
class ApplyMsg:
    """A committed command or an installed snapshot handed to the service."""

    command_valid: bool = False
    command: Any = None
    command_index: int = 0

    snapshot_valid: bool = False
    snapshot: bytes = b""
    snapshot_term: int = 0
    snapshot_index: int = 0


@dataclass
class LogEntry:
    """One entry of the replicated log."""

    term: int = 0
    command: Any = None


@dataclass
class RequestVoteArgs:
    term: int = 0
    candidate_id: int = 0
    last_log_index: int = 0
    last_log_term: int = 0


@dataclass
class RequestVoteReply:
    term: int = 0
    vote_granted: bool = False


@dataclass
class AppendEntriesArgs:
    term: int = 0
    leader_id: int = 0
    prev_log_index: int = 0
    prev_log_term: int = 0
    entries: list[LogEntry] = field(default_factory=list)
    leader_commit: int = 0


@dataclass
class AppendEntriesReply:
    """A follower's answer; it echoes enough of the request to be matched."""

    me: int = 0
    term: int = 0
    success: bool = False
    append_num: int = 0
    conflict_index: int = 0
    conflict_term: int = 0
    prev_log_index: int = 0
    leader_term: int = 0


@dataclass
class InstallSnapshotArgs:
    term: int = 0
    leader_id: int = 0
    last_included_index: int = 0
    last_included_term: int = 0
    data: bytes = b""


@dataclass
class InstallSnapshotReply:
    me: int = 0
    term: int = 0
    new_index: int = 0
    leader_term: int = 0
    success: bool = False
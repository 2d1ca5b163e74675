"""A Raft consensus peer reachable over :mod:`mrraft.rpc`."""

from __future__ import annotations

import logging
import pickle
import queue
import random
import threading
import time
from typing import Any

from .logsetup import LOGGER_NAME
from .mediantracker import MedianTracker
from .messages import (
    AppendEntriesArgs,
    AppendEntriesReply,
    ApplyMsg,
    InstallSnapshotArgs,
    InstallSnapshotReply,
    LogEntry,
    RequestVoteArgs,
    RequestVoteReply,
    Role,
)
from .persister import Persister
from .rpc import RpcClient, RpcError

_log = logging.getLogger(LOGGER_NAME)

_SERVICE = "Raft"
_HEARTBEAT_SECONDS = 0.05
_TIMEOUT_BASE_MS = 300
_TIMEOUT_SPREAD_MS = 200


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _election_timeout_ms() -> int:
    return _TIMEOUT_BASE_MS + random.randrange(_TIMEOUT_SPREAD_MS)


def _drain(replies: queue.Queue, limit: int) -> list[Any]:
    """Take up to ``limit`` replies that have already arrived."""
    collected = []
    while len(collected) < limit:
        try:
            collected.append(replies.get_nowait())
        except queue.Empty:
            break
    return collected


class Raft:
    """One Raft peer.

    Committed commands and installed snapshots are put on ``apply_queue``
    as :class:`ApplyMsg` values; the queue should be unbounded. Peers reach
    this object through an RPC server that registers it as ``"Raft"``.
    """

    def __init__(self, peers, me, persister: Persister | None, apply_queue) -> None:
        self.peers = list(peers)
        self.me = me
        self._persister = persister
        self._apply_queue = apply_queue
        self._lock = threading.Lock()
        self._dead = threading.Event()
        self._clients: list[RpcClient | None] = [None] * len(self.peers)

        self._current_term = 0
        self._voted_for = -1
        self._role = Role.FOLLOWER

        self._log: list[LogEntry] = [LogEntry()]
        self._snapshot = b""
        self._snapshot_index = 0
        self._snapshot_term = 0
        self._commit_index = 0

        self._next_index = [0] * len(self.peers)
        self._match_index = [0] * len(self.peers)
        self._heartbeat_ms = 0
        self._tracker = MedianTracker([0] * len(self.peers))

        if persister is not None:
            self._restore(persister)
        _log.debug("raft node created", extra={"fields": {"me": me}})

    # ----- state -------------------------------------------------------

    def get_state(self) -> tuple[int, bool]:
        """Return the current term and whether this peer is the leader."""
        with self._lock:
            return self._current_term, self._role == Role.LEADER

    def log_len(self) -> int:
        """Index of the last log entry, counting entries in the snapshot."""
        return len(self._log) - 1 + self._snapshot_index

    def true_to_local(self, index: int) -> int:
        """Convert a global log index to a position in the in-memory log."""
        return index - self._snapshot_index

    def local_to_true(self, index: int) -> int:
        """Convert a position in the in-memory log to a global log index."""
        return index + self._snapshot_index

    def last_log_term(self) -> int:
        if len(self._log) <= 1:
            return self._snapshot_term
        return self._log[-1].term

    def term_at(self, index: int) -> int:
        """Term of the entry at global ``index``."""
        if index > self._snapshot_index:
            return self._log[self.true_to_local(index)].term
        if index == self._snapshot_index:
            return self._snapshot_term
        _log.error("log entry requested from inside the snapshot")
        raise IndexError(f"log index {index} is compacted into the snapshot")

    def change_state(self, term: int, voted_for: int, role: Role) -> None:
        with self._lock:
            self._set_state(term, voted_for, role)

    def _set_state(self, term: int, voted_for: int, role: Role) -> None:
        self._current_term = term
        self._voted_for = voted_for
        self._persist()
        self._role = role

    # ----- persistence -------------------------------------------------

    def _persist(self) -> None:
        if self._persister is None:
            return
        state = pickle.dumps(
            (
                self._current_term,
                self._voted_for,
                self._snapshot_index,
                self._snapshot_term,
                self._log,
            )
        )
        self._persister.save(state, self._snapshot)

    def _restore(self, persister: Persister) -> None:
        data = persister.read_raft_state()
        if not data:
            return
        term, voted_for, snapshot_index, snapshot_term, log = pickle.loads(data)
        self._current_term = term
        self._voted_for = voted_for
        self._snapshot_index = snapshot_index
        self._snapshot_term = snapshot_term
        self._commit_index = snapshot_index
        self._log = list(log)
        self._snapshot = persister.read_snapshot()

    def snapshot(self, index: int, data) -> None:
        """Discard log entries up to ``index``, keeping ``data`` in their place."""
        with self._lock:
            if index <= self._snapshot_index:
                return
            local = self.true_to_local(index)
            if local < len(self._log):
                self._snapshot_term = self._log[local].term
            cut = self.true_to_local(index + 1)
            self._log = [LogEntry()] + self._log[cut:]
            self._snapshot_index = index
            self._snapshot = bytes(data)
            self._commit_index = max(self._commit_index, index)
            self._persist()

    # ----- applying ----------------------------------------------------

    def _apply_entries(self, first: int, last: int) -> None:
        for index in range(first, last + 1):
            entry = self._log[self.true_to_local(index)]
            self._apply_queue.put(
                ApplyMsg(command_valid=True, command=entry.command, command_index=index)
            )

    # ----- RPC handlers ------------------------------------------------

    def append_entries(self, args: AppendEntriesArgs) -> AppendEntriesReply:
        reply = AppendEntriesReply()
        if self.killed():
            return reply
        with self._lock:
            reply.term = self._current_term
            reply.me = self.me
            reply.prev_log_index = args.prev_log_index
            reply.leader_term = args.term

            if args.term < self._current_term:
                return reply
            self._heartbeat_ms = _now_ms()
            if args.term > self._current_term:
                self._set_state(args.term, -1, Role.FOLLOWER)

            prev = args.prev_log_index
            last = self.local_to_true(len(self._log) - 1)
            if prev > last or args.prev_log_term != self.term_at(prev):
                if len(self._log) != 1 and prev <= last:
                    del self._log[max(1, self.true_to_local(prev)):]
                end = self.local_to_true(len(self._log))
                reply.conflict_index = min(prev, end)
                if prev >= end:
                    reply.conflict_index = end
                else:
                    reply.conflict_term = self.term_at(prev)
                    lo, hi = 0, self.true_to_local(prev) + 1
                    while lo + 1 < hi:
                        mid = (lo + hi) // 2
                        if self._log[mid].term >= reply.conflict_term:
                            hi = mid
                        else:
                            lo = mid
                    reply.conflict_index = self.local_to_true(hi)
                return reply

            for offset, entry in enumerate(args.entries):
                index = prev + offset + 1
                if index > self.local_to_true(len(self._log) - 1):
                    self._log.extend(args.entries[offset:])
                    self._persist()
                    break
                if self.term_at(index) != entry.term:
                    del self._log[self.true_to_local(index):]
                    self._log.extend(args.entries[offset:])
                    self._persist()
                    break

            reply.append_num = len(args.entries)
            reply.success = True
            if args.leader_commit > self._commit_index:
                upto = min(args.leader_commit, self.local_to_true(len(self._log) - 1))
                self._apply_entries(self._commit_index + 1, upto)
                self._commit_index = upto
            return reply

    def install_snapshot(self, args: InstallSnapshotArgs) -> InstallSnapshotReply:
        reply = InstallSnapshotReply()
        if self.killed():
            return reply
        with self._lock:
            if args.term < self._current_term or args.last_included_index <= self._commit_index:
                return reply

            reply.success = True
            reply.leader_term = args.term
            reply.me = self.me
            reply.term = self._current_term
            reply.new_index = args.last_included_index

            self._snapshot_term = args.last_included_term
            self._heartbeat_ms = _now_ms()
            self._apply_queue.put(
                ApplyMsg(
                    snapshot_valid=True,
                    snapshot=args.data,
                    snapshot_term=args.last_included_term,
                    snapshot_index=args.last_included_index,
                )
            )
            self._log = [LogEntry()]
            self._snapshot_index = args.last_included_index
            self._snapshot = args.data
            self._commit_index = max(self._commit_index, args.last_included_index)
            self._persist()
            return reply

    def _log_is_newer_than(self, args: RequestVoteArgs) -> bool:
        mine = self.last_log_term()
        return args.last_log_term < mine or (
            args.last_log_term == mine
            and self.true_to_local(args.last_log_index) < len(self._log) - 1
        )

    def pre_request_vote(self, args: RequestVoteArgs) -> RequestVoteReply:
        """Answer whether a real vote would be granted, changing nothing but the timer."""
        reply = RequestVoteReply()
        if self.killed():
            return reply
        with self._lock:
            if (
                args.term < self._current_term
                or (
                    args.term == self._current_term
                    and self._voted_for not in (-1, args.candidate_id)
                )
                or self._log_is_newer_than(args)
            ):
                return reply
            self._heartbeat_ms = _now_ms()
            reply.vote_granted = True
            return reply

    def request_vote(self, args: RequestVoteArgs) -> RequestVoteReply:
        reply = RequestVoteReply()
        if self.killed():
            return reply
        with self._lock:
            reply.term = self._current_term
            if args.term > self._current_term:
                self._set_state(args.term, -1, Role.FOLLOWER)
            if (
                args.term < self._current_term
                or self._voted_for not in (-1, args.candidate_id)
                or self._log_is_newer_than(args)
            ):
                return reply
            self._heartbeat_ms = _now_ms()
            reply.vote_granted = True
            self._set_state(self._current_term, args.candidate_id, Role.FOLLOWER)
            return reply

    # ----- client interface --------------------------------------------

    def start(self, command) -> tuple[int, int, bool]:
        """Append ``command`` if leader; return its index, the term and leadership."""
        with self._lock:
            index = self.local_to_true(len(self._log))
            term = self._current_term
            is_leader = self._role == Role.LEADER
            if is_leader:
                self._log.append(LogEntry(term=self._current_term, command=command))
                self._persist()
                self._tracker.add(self.me, self.local_to_true(len(self._log) - 1))
            return index, term, is_leader

    # ----- outgoing RPC ------------------------------------------------

    def _rpc_call(self, peer: int, method: str, args: Any) -> Any:
        if peer == self.me:
            raise ValueError("a peer cannot call itself")
        client = self._clients[peer]
        if client is None:
            return None
        try:
            return client.call(f"{_SERVICE}.{method}", args)
        except RpcError as exc:
            _log.error("rpc failed", extra={"fields": {"peer": peer, "error": str(exc)}})
            return None

    def _broadcast(self, method: str, args: Any) -> queue.Queue:
        replies: queue.Queue = queue.Queue()

        def ask(peer: int) -> None:
            replies.put(self._rpc_call(peer, method, args))

        for peer in range(len(self.peers)):
            if peer != self.me:
                threading.Thread(target=ask, args=(peer,), daemon=True).start()
        return replies

    def _sleep_unlocked(self, seconds: float) -> None:
        self._lock.release()
        try:
            time.sleep(seconds)
        finally:
            self._lock.acquire()

    def _vote_args(self, term: int) -> RequestVoteArgs:
        return RequestVoteArgs(
            term=term,
            candidate_id=self.me,
            last_log_index=self.local_to_true(len(self._log) - 1),
            last_log_term=self.last_log_term(),
        )

    # ----- elections (called with the lock held) -----------------------

    def _prevote(self) -> bool:
        peers = len(self.peers)
        replies = self._broadcast("pre_request_vote", self._vote_args(self._current_term + 1))
        self._sleep_unlocked(_election_timeout_ms() / 1000)
        if self._role == Role.FOLLOWER:
            return False
        granted = 1
        for reply in _drain(replies, peers - 1):
            if reply is None:
                continue
            if reply.vote_granted:
                granted += 1
                if granted >= peers // 2 + 1:
                    return True
            elif reply.term > self._current_term:
                return False
        return False

    def _run_candidate(self) -> None:
        self._role = Role.CANDIDATE
        if not self._prevote():
            self._role = Role.FOLLOWER
            return

        peers = len(self.peers)
        while not self.killed():
            self._set_state(self._current_term + 1, self.me, self._role)
            replies = self._broadcast("request_vote", self._vote_args(self._current_term))
            self._sleep_unlocked(_election_timeout_ms() / 1000)
            if self._role == Role.FOLLOWER:
                return
            granted = 1
            for reply in _drain(replies, peers - 1):
                if reply is None:
                    continue
                if reply.vote_granted:
                    granted += 1
                    if granted >= peers // 2 + 1:
                        self._run_leader()
                        return
                elif reply.term > self._current_term:
                    self._set_state(reply.term, -1, Role.FOLLOWER)
                    return

    # ----- leadership (called with the lock held) ----------------------

    def _run_leader(self) -> None:
        _log.debug("became leader", extra={"fields": {"me": self.me}})
        self._role = Role.LEADER
        self._tracker.add(self.me, self.local_to_true(len(self._log) - 1))
        for peer in range(len(self.peers)):
            self._match_index[peer] = -1
            self._next_index[peer] = self.local_to_true(len(self._log))

        stop = threading.Event()
        try:
            while not self.killed():
                for peer in range(len(self.peers)):
                    if peer == self.me:
                        continue
                    if self._next_index[peer] > self._snapshot_index:
                        self._send_entries(peer, stop)
                    else:
                        self._send_snapshot(peer, stop)
                self._sleep_unlocked(_HEARTBEAT_SECONDS)
                if self._role == Role.FOLLOWER:
                    return
        finally:
            stop.set()

    def _send_entries(self, peer: int, stop: threading.Event) -> None:
        next_index = self._next_index[peer]
        prev = next_index - 1
        args = AppendEntriesArgs(
            term=self._current_term,
            leader_id=self.me,
            prev_log_index=prev,
            prev_log_term=self.term_at(prev),
            entries=list(self._log[self.true_to_local(next_index):]),
            leader_commit=self._commit_index,
        )

        def replicate() -> None:
            reply = self._rpc_call(peer, "append_entries", args)
            if reply is None:
                return
            with self._lock:
                if not stop.is_set():
                    self._on_entries_reply(reply)

        threading.Thread(target=replicate, daemon=True).start()

    def _send_snapshot(self, peer: int, stop: threading.Event) -> None:
        args = InstallSnapshotArgs(
            term=self._current_term,
            leader_id=self.me,
            last_included_index=self._snapshot_index,
            last_included_term=self._snapshot_term,
            data=self._snapshot,
        )

        def install() -> None:
            reply = self._rpc_call(peer, "install_snapshot", args)
            if reply is None:
                return
            with self._lock:
                if not stop.is_set():
                    self._on_snapshot_reply(reply)

        threading.Thread(target=install, daemon=True).start()

    def _on_snapshot_reply(self, reply: InstallSnapshotReply) -> None:
        if reply.leader_term != self._current_term:
            return
        if reply.term > self._current_term:
            self._set_state(reply.term, -1, Role.FOLLOWER)
            return
        if not reply.success:
            return
        self._next_index[reply.me] = reply.new_index + 1
        self._match_index[reply.me] = reply.new_index

    def _on_entries_reply(self, reply: AppendEntriesReply) -> None:
        if reply.leader_term != self._current_term or self._role == Role.FOLLOWER:
            return
        if self._current_term < reply.term:
            self._set_state(reply.term, -1, Role.FOLLOWER)
            return

        peer = reply.me
        if not reply.success:
            if reply.conflict_term == 0:
                self._next_index[peer] = reply.conflict_index
                return
            lo, hi = 0, self.true_to_local(reply.prev_log_index)
            while lo + 1 < hi:
                mid = (lo + hi) // 2
                if self._log[mid].term <= reply.conflict_term:
                    lo = mid
                else:
                    hi = mid
            if self._log[lo].term == reply.conflict_term:
                self._next_index[peer] = self.local_to_true(lo + 1)
            else:
                self._next_index[peer] = reply.conflict_index
            return

        self._next_index[peer] = reply.prev_log_index + reply.append_num + 1
        self._match_index[peer] = self._next_index[peer] - 1
        if reply.append_num == 0:
            return
        self._tracker.add(peer, self._match_index[peer])
        median = self._tracker.median()
        if self.term_at(median) == self._current_term and median > self._commit_index:
            self._apply_entries(self._commit_index + 1, median)
            self._commit_index = median

    # ----- lifecycle ---------------------------------------------------

    def _ticker(self) -> None:
        while not self.killed():
            timeout = _election_timeout_ms()
            time.sleep(timeout / 1000)
            with self._lock:
                if self.killed():
                    break
                if _now_ms() - self._heartbeat_ms > timeout:
                    self._run_candidate()

    def open(self) -> None:
        """Connect to every other peer and start the election timer."""
        opened: list[RpcClient] = []
        try:
            for peer, address in enumerate(self.peers):
                if peer == self.me:
                    continue
                client = RpcClient(address)
                opened.append(client)
                self._clients[peer] = client
        except RpcError as exc:
            _log.error("cannot reach peer", extra={"fields": {"error": str(exc)}})
            for client in opened:
                client.close()
            raise
        threading.Thread(target=self._ticker, daemon=True).start()

    def kill(self) -> None:
        """Stop taking part and close the connections to the other peers."""
        self._dead.set()
        with self._lock:
            clients = [client for client in self._clients if client is not None]
        for client in clients:
            client.close()

    def killed(self) -> bool:
        return self._dead.is_set()
import queue
import time

import pytest

from mrraft.messages import (
    AppendEntriesArgs,
    InstallSnapshotArgs,
    LogEntry,
    RequestVoteArgs,
    Role,
)
from mrraft.node import Raft
from mrraft.persister import Persister
from mrraft.rpc import RpcServer

PEERS = ["127.0.0.1:1", "127.0.0.1:2", "127.0.0.1:3"]


def make_node(me=0, persister=None):
    apply_queue = queue.Queue()
    return Raft(PEERS, me, persister, apply_queue), apply_queue


def drain(apply_queue):
    items = []
    while True:
        try:
            items.append(apply_queue.get_nowait())
        except queue.Empty:
            return items


def entries(*specs):
    return [LogEntry(term=term, command=command) for term, command in specs]


def test_new_node_is_follower_with_empty_log():
    node, _ = make_node()
    assert node.get_state() == (0, False)
    assert node.log_len() == 0
    assert node.last_log_term() == 0
    assert node.term_at(0) == 0


def test_start_on_follower_is_rejected():
    node, _ = make_node()
    index, term, is_leader = node.start("cmd")
    assert is_leader is False
    assert index == node.log_len() + 1
    assert term == node.get_state()[0]
    assert node.log_len() == 0


def test_start_on_leader_appends():
    node, _ = make_node()
    node.change_state(4, 0, Role.LEADER)
    assert node.get_state() == (4, True)
    index, term, is_leader = node.start("cmd")
    assert is_leader is True
    assert term == 4
    assert node.log_len() == index
    assert node.last_log_term() == 4


def test_snapshot_compacts_log_and_shifts_indices():
    node, _ = make_node()
    node.append_entries(
        AppendEntriesArgs(term=1, entries=entries((1, "a"), (1, "b"), (1, "c")))
    )
    node.snapshot(2, b"snap")
    assert node.log_len() == 3
    assert node.true_to_local(2) == 0
    for index in (2, 3):
        assert node.local_to_true(node.true_to_local(index)) == index
    assert node.term_at(2) == 1
    assert node.term_at(3) == 1
    with pytest.raises(IndexError):
        node.term_at(1)


def test_append_rejects_stale_term():
    node, _ = make_node()
    node.change_state(3, -1, Role.FOLLOWER)
    reply = node.append_entries(AppendEntriesArgs(term=2, entries=entries((2, "x"))))
    assert reply.success is False
    assert reply.term == 3
    assert node.get_state() == (3, False)
    assert node.log_len() == 0


def test_append_adopts_newer_term_and_applies_commits():
    node, apply_queue = make_node()
    reply = node.append_entries(
        AppendEntriesArgs(term=2, entries=entries((2, "x"), (2, "y")), leader_commit=2)
    )
    assert reply.success is True
    assert reply.append_num == 2
    assert reply.leader_term == 2
    assert node.get_state() == (2, False)
    assert node.log_len() == 2
    assert node.last_log_term() == 2
    messages = drain(apply_queue)
    assert [(m.command, m.command_index) for m in messages] == [("x", 1), ("y", 2)]
    assert all(m.command_valid for m in messages)


def test_commit_is_limited_to_own_log_and_not_repeated():
    node, apply_queue = make_node()
    node.append_entries(AppendEntriesArgs(term=1, entries=entries((1, "x")), leader_commit=5))
    node.append_entries(
        AppendEntriesArgs(
            term=1, prev_log_index=1, prev_log_term=1, entries=entries((1, "y")), leader_commit=5
        )
    )
    messages = drain(apply_queue)
    assert [(m.command, m.command_index) for m in messages] == [("x", 1), ("y", 2)]


def test_mismatch_beyond_end_reports_log_end():
    node, _ = make_node()
    reply = node.append_entries(AppendEntriesArgs(term=1, prev_log_index=5, prev_log_term=1))
    assert reply.success is False
    assert reply.conflict_term == 0
    assert reply.conflict_index == node.log_len() + 1
    assert reply.prev_log_index == 5


def test_mismatch_truncates_conflicting_suffix():
    node, _ = make_node()
    node.append_entries(AppendEntriesArgs(term=2, entries=entries((1, "a"), (1, "b"), (2, "c"))))
    reply = node.append_entries(AppendEntriesArgs(term=3, prev_log_index=3, prev_log_term=3))
    assert reply.success is False
    assert node.log_len() == 2
    assert node.last_log_term() == 1
    assert reply.conflict_index == node.log_len() + 1


def test_conflicting_entries_are_replaced():
    node, _ = make_node()
    node.append_entries(AppendEntriesArgs(term=1, entries=entries((1, "a"), (1, "b"))))
    reply = node.append_entries(
        AppendEntriesArgs(term=2, prev_log_index=1, prev_log_term=1, entries=entries((2, "c")))
    )
    assert reply.success is True
    assert node.log_len() == 2
    assert node.term_at(2) == 2


def test_matching_entries_are_kept():
    node, _ = make_node()
    node.append_entries(AppendEntriesArgs(term=1, entries=entries((1, "a"), (1, "b"))))
    reply = node.append_entries(AppendEntriesArgs(term=1, entries=entries((1, "a"))))
    assert reply.success is True
    assert node.log_len() == 2


def test_request_vote_grants_once_per_term():
    node, _ = make_node()
    first = node.request_vote(RequestVoteArgs(term=1, candidate_id=1))
    assert first.vote_granted is True
    assert node.get_state() == (1, False)
    second = node.request_vote(RequestVoteArgs(term=1, candidate_id=2))
    assert second.vote_granted is False
    assert second.term == 1
    again = node.request_vote(RequestVoteArgs(term=1, candidate_id=1))
    assert again.vote_granted is True


def test_request_vote_rejects_out_of_date_log():
    node, _ = make_node()
    node.append_entries(AppendEntriesArgs(term=2, entries=entries((2, "x"))))
    older_term = node.request_vote(
        RequestVoteArgs(term=3, candidate_id=1, last_log_index=5, last_log_term=1)
    )
    assert older_term.vote_granted is False
    assert node.get_state() == (3, False)
    shorter = node.request_vote(
        RequestVoteArgs(term=3, candidate_id=1, last_log_index=0, last_log_term=2)
    )
    assert shorter.vote_granted is False
    equal = node.request_vote(
        RequestVoteArgs(term=3, candidate_id=1, last_log_index=1, last_log_term=2)
    )
    assert equal.vote_granted is True


def test_pre_request_vote_leaves_state_alone():
    node, _ = make_node()
    node.change_state(2, -1, Role.FOLLOWER)
    reply = node.pre_request_vote(RequestVoteArgs(term=3, candidate_id=1))
    assert reply.vote_granted is True
    assert node.get_state() == (2, False)
    stale = node.pre_request_vote(RequestVoteArgs(term=1, candidate_id=1))
    assert stale.vote_granted is False


def test_install_snapshot_replaces_log():
    node, apply_queue = make_node()
    reply = node.install_snapshot(
        InstallSnapshotArgs(
            term=1, leader_id=1, last_included_index=5, last_included_term=1, data=b"state"
        )
    )
    assert reply.success is True
    assert reply.new_index == 5
    assert reply.leader_term == 1
    assert node.log_len() == 5
    assert node.last_log_term() == 1
    assert node.term_at(5) == 1
    messages = drain(apply_queue)
    assert len(messages) == 1
    assert messages[0].snapshot_valid is True
    assert messages[0].snapshot == b"state"
    assert messages[0].snapshot_index == 5

    stale = node.install_snapshot(
        InstallSnapshotArgs(term=1, leader_id=1, last_included_index=3, last_included_term=1)
    )
    assert stale.success is False
    assert node.log_len() == 5


def test_entries_after_snapshot_are_applied_with_global_indices():
    node, apply_queue = make_node()
    node.install_snapshot(
        InstallSnapshotArgs(term=1, leader_id=1, last_included_index=5, last_included_term=1)
    )
    drain(apply_queue)
    reply = node.append_entries(
        AppendEntriesArgs(
            term=1, prev_log_index=5, prev_log_term=1, entries=entries((1, "z")), leader_commit=6
        )
    )
    assert reply.success is True
    messages = drain(apply_queue)
    assert [(m.command, m.command_index) for m in messages] == [("z", 6)]


def test_killed_node_ignores_rpcs():
    node, apply_queue = make_node()
    node.kill()
    assert node.killed() is True
    reply = node.append_entries(
        AppendEntriesArgs(term=5, entries=entries((5, "x")), leader_commit=1)
    )
    assert reply.success is False
    assert node.get_state() == (0, False)
    assert node.log_len() == 0
    assert drain(apply_queue) == []


def test_persisted_state_is_restored():
    persister = Persister()
    node, _ = make_node(persister=persister)
    node.append_entries(AppendEntriesArgs(term=2, entries=entries((2, "a"))))
    node.request_vote(RequestVoteArgs(term=3, candidate_id=1, last_log_index=1, last_log_term=2))
    assert persister.raft_state_size() > 0

    restored, _ = make_node(persister=persister.copy())
    assert restored.get_state() == node.get_state()
    assert restored.log_len() == node.log_len()
    assert restored.last_log_term() == node.last_log_term()
    other = restored.request_vote(
        RequestVoteArgs(term=3, candidate_id=2, last_log_index=1, last_log_term=2)
    )
    assert other.vote_granted is False


def test_cluster_elects_leader_and_replicates():
    servers = [RpcServer("127.0.0.1:0") for _ in range(3)]
    for server in servers:
        server.start()
    addrs = [server.address for server in servers]
    queues = [queue.Queue() for _ in addrs]
    nodes = [Raft(addrs, me, None, apply_queue) for me, apply_queue in enumerate(queues)]
    for server, node in zip(servers, nodes):
        server.register("Raft", node)
    try:
        for node in nodes:
            node.open()
        accepted = None
        deadline = time.monotonic() + 30
        while accepted is None and time.monotonic() < deadline:
            for node in nodes:
                index, term, is_leader = node.start("hello world")
                if is_leader:
                    accepted = (index, term)
                    break
            else:
                time.sleep(0.1)
        assert accepted is not None
        index, _ = accepted
        for apply_queue in queues:
            message = apply_queue.get(timeout=15)
            assert message.command == "hello world"
            assert message.command_index == index
    finally:
        for node in nodes:
            node.kill()
        for server in servers:
            server.close()
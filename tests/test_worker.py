import json
import socket
import threading
import time

import pytest

from mrraft.invertedindex import map_document, reduce_documents
from mrraft.protocol import Args, Reply, ReplyKind
from mrraft.rpc import RpcError, RpcServer
from mrraft.scheduler import Op, TaskScheduler
from mrraft.worker import (
    KeyValue,
    MasterClient,
    ihash,
    merge_sorted,
    run_map,
    run_reduce,
    run_worker,
)


def _free_address():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return f"127.0.0.1:{sock.getsockname()[1]}"


class _Scripted:
    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = 0

    def rpc_handle(self, args):
        self.calls += 1
        return self.replies[min(self.calls - 1, len(self.replies) - 1)]


class _SchedulerMaster:
    def __init__(self, files, n_reduce):
        self.scheduler = TaskScheduler(files, n_reduce)
        self.lock = threading.Lock()

    def rpc_handle(self, args):
        with self.lock:
            op = Op(send_type=args.send_type, id=args.id,
                    timestamp=time.time_ns() // 1_000_000, rand_id=args.rand_id)
            return self.scheduler.handle(op)


@pytest.fixture
def serve():
    servers = []

    def start(obj):
        server = RpcServer("127.0.0.1:0")
        server.register("Master", obj)
        server.start()
        servers.append(server)
        return server

    yield start
    for server in servers:
        server.close()


def test_ihash_fnv1a_vectors():
    assert ihash("") == 0x011C9DC5
    assert ihash("a") == 0x640C292C


def test_ihash_is_non_negative_31_bit():
    for word in ["apple", "banana", "ünïcode", "x" * 100]:
        assert 0 <= ihash(word) <= 0x7FFFFFFF


def test_merge_sorted_orders_all_pairs():
    first = [KeyValue("a", "1"), KeyValue("c", "1")]
    second = [KeyValue("b", "2"), KeyValue("c", "2"), KeyValue("d", "2")]
    merged = list(merge_sorted([first, second]))
    assert [kv.key for kv in merged] == sorted(kv.key for kv in first + second)
    assert sorted(merged, key=lambda kv: (kv.key, kv.value)) == sorted(
        first + second, key=lambda kv: (kv.key, kv.value)
    )


def test_merge_sorted_of_nothing_is_empty():
    assert list(merge_sorted([[], []])) == []


def test_run_map_partitions_by_hash(tmp_path):
    source = tmp_path / "input.txt"
    source.write_text("b a b c")
    paths = run_map(4, source, 2, lambda name, text: [KeyValue(w, "1") for w in text.split()],
                    tmp_path)
    assert [p.name for p in paths] == ["mr-4-0", "mr-4-1"]
    total = 0
    for reduce_id, path in enumerate(paths):
        records = [json.loads(line) for line in path.read_text().splitlines()]
        keys = [r["Key"] for r in records]
        assert keys == sorted(keys)
        assert all(ihash(k) % 2 == reduce_id for k in keys)
        assert all(set(r) == {"Key", "Value"} for r in records)
        total += len(records)
    assert total == 4


def test_run_map_accepts_pairs(tmp_path):
    source = tmp_path / "doc.txt"
    source.write_text("hello world")
    paths = run_map(0, source, 1, map_document, tmp_path)
    records = [json.loads(line) for line in paths[0].read_text().splitlines()]
    assert sorted(r["Key"] for r in records) == ["hello", "world"]
    assert {r["Value"] for r in records} == {str(source)}


def test_run_map_rejects_zero_reduce(tmp_path):
    source = tmp_path / "doc.txt"
    source.write_text("x")
    with pytest.raises(ValueError):
        run_map(0, source, 0, map_document, tmp_path)


def test_run_map_missing_input(tmp_path):
    with pytest.raises(FileNotFoundError):
        run_map(0, tmp_path / "absent.txt", 1, map_document, tmp_path)


def _write_intermediate(path, pairs):
    path.write_text("".join(json.dumps({"Key": k, "Value": v}) + "\n" for k, v in pairs))


def test_run_reduce_groups_across_files(tmp_path):
    _write_intermediate(tmp_path / "mr-0-0", [("a", "x"), ("c", "x")])
    _write_intermediate(tmp_path / "mr-1-0", [("a", "y"), ("b", "y")])
    out = run_reduce(0, 2, lambda key, values: ",".join(sorted(values)), tmp_path)
    assert out.name == "mr-out-0"
    assert out.read_text() == "a x,y\nb y\nc x\n"


def test_run_reduce_missing_intermediate(tmp_path):
    _write_intermediate(tmp_path / "mr-0-0", [("a", "x")])
    with pytest.raises(FileNotFoundError):
        run_reduce(0, 2, reduce_documents, tmp_path)
    assert not (tmp_path / "mr-out-0").exists()


def test_client_skips_wrong_leader(serve):
    follower = serve(_Scripted(Reply(reply_type=ReplyKind.WRONG_LEADER)))
    leader = serve(_Scripted(Reply(reply_type=ReplyKind.MAP, id=7, file="f")))
    with MasterClient([follower.address, leader.address]) as client:
        reply = client.call(Args())
    assert reply.reply_type == ReplyKind.MAP
    assert reply.id == 7


def test_client_gives_up_when_no_leader(serve):
    first = serve(_Scripted(Reply(reply_type=ReplyKind.WRONG_LEADER)))
    second = serve(_Scripted(Reply(reply_type=ReplyKind.WRONG_LEADER)))
    with MasterClient([first.address, second.address]) as client:
        assert client.call(Args()) is None


def test_client_retries_after_timeout(serve):
    master = _Scripted(Reply(reply_type=ReplyKind.TIMEOUT), Reply(reply_type=ReplyKind.WAIT))
    server = serve(master)
    with MasterClient([server.address]) as client:
        reply = client.call(Args())
    assert reply.reply_type == ReplyKind.WAIT
    assert master.calls == 2


def test_client_returns_none_when_server_closed(serve):
    server = serve(_Scripted(Reply(reply_type=ReplyKind.WAIT)))
    with MasterClient([server.address]) as client:
        server.close()
        assert client.call(Args()) is None


def test_client_unreachable_master():
    with pytest.raises(RpcError):
        MasterClient([_free_address()])


def test_run_worker_stops_on_done(serve, tmp_path):
    server = serve(_Scripted(Reply(reply_type=ReplyKind.DONE)))
    run_worker([server.address], map_document, reduce_documents, tmp_path)
    assert list(tmp_path.iterdir()) == []


def test_run_worker_builds_inverted_index(serve, tmp_path):
    first = tmp_path / "a.txt"
    second = tmp_path / "b.txt"
    first.write_text("apple banana")
    second.write_text("banana cherry")
    out_dir = tmp_path / "out"
    out_dir.mkdir()
    master = _SchedulerMaster([str(first), str(second)], 3)
    server = serve(master)

    run_worker([server.address], map_document, reduce_documents, out_dir)

    assert master.scheduler.reduce_is_done
    result = {}
    for reduce_id in range(3):
        for line in (out_dir / f"mr-out-{reduce_id}").read_text().splitlines():
            key, value = line.split(" ", 1)
            result[key] = value
    assert result == {
        "apple": str(first),
        "banana": f"{first},{second}",
        "cherry": str(second),
    }
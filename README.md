# mrraft

A small MapReduce framework in which the master is not a single point of
failure: several master replicas agree on every scheduling decision through
the Raft consensus algorithm, and workers talk to whichever replica is
currently the leader.

## How it works

- **Masters** hand out map tasks (one per input file) and then reduce tasks
  (`nReduce` of them). Every request from a worker is appended to the Raft log
  and answered only once it has been committed, so all replicas keep the same
  view of which tasks are pending, running, done or timed out. A running map
  task is handed out again after 10 seconds without completion, a reduce task
  after 5 seconds. A request that is not committed within 5 seconds is
  answered with a timeout and the worker retries it.
- **Workers** ask for a task, run it, and report back. Map output is
  partitioned by a 32-bit FNV-1a hash of the key (`mrraft.worker.ihash`) into
  intermediate files named `mr-<map>-<reduce>`, each holding one JSON record
  (`{"Key": ..., "Value": ...}`) per line, sorted by key. Reduce tasks merge
  their sorted inputs and write `mr-out-<reduce>`, one `key value` line per
  key. Files are written to a temporary name first and then renamed.
- The bundled application in `mrraft.invertedindex` builds an inverted index:
  `map_document` emits each distinct word (a run of letters) of a document
  once, and `reduce_documents` returns the sorted, comma-separated list of
  documents a word appears in.

## Installation

```
pip install .
```

## Configuration

The master and worker commands read a YAML file (`config.yaml` by default):

```yaml
raft:
  nodes:
    - 127.0.0.1:8000
    - 127.0.0.1:8001
    - 127.0.0.1:8002
master:
  nMaster: 3
  nReduce: 10
  files:
    - pg-one.txt
    - pg-two.txt
worker:
  nWorker: 4
  plugin: invertedindex
log:
  level: info          # debug, info, warn or error; anything else means info
  masterfile: master.log
  workerfile: worker.log
```

Missing keys keep zero values; a value of the wrong type is an error.
The `raft` section also accepts `election_timeout`,
`election_timeout_random` and `heartbeat_interval`; they are read into the
`Config` but the Raft timing itself is fixed (an election timeout of
300–500 ms and a 50 ms heartbeat).

`worker.plugin` names the map/reduce application the workers run. Its
directory, extension, case, underscores and dashes are ignored, so
`invertedindex` and `mrapp/Inverted_index.so` both select the inverted index,
which is the only application available.

Log files are truncated when a process starts; log lines go both to the
file and to standard output.

## Running

Start the master replicas first, then the workers, from the directory that
holds the input files:

```
mrraft-master --config config.yaml
mrraft-worker --config config.yaml
```

The master command starts `nMaster` replicas in one process, one on each of
the first `nMaster` addresses under `raft.nodes`, and exits once every reduce
task has finished. The worker command starts `nWorker` workers in one process
that keep asking for work until the masters report that the job is done.
Workers read and write the intermediate and output files in the current
directory.

To watch a bare Raft cluster elect a leader and take a command:

```
mrraft-raft-demo
```

It starts three peers on `127.0.0.1:8000` upwards, prints every applied
entry, waits 100 seconds, then submits `hello world` to each peer and prints
the index, term and whether that peer was the leader. The options `--peers`,
`--wait`, `--host` and `--base-port` change these settings.

## Using it as a library

- `mrraft.config.load_config(path)` parses the configuration file into a
  `Config`.
- `mrraft.scheduler.TaskScheduler` is the task-assignment state machine the
  masters replicate; `handle(op)` takes an `Op` and returns a
  `mrraft.protocol.Reply`.
- `mrraft.worker.run_map`, `run_reduce` and `merge_sorted` run single tasks
  without a cluster, which is handy for testing a map/reduce application. A
  map function may return `KeyValue` objects or `(key, value)` pairs.
- `mrraft.worker.run_worker` and `MasterClient` talk to a running cluster.
- `mrraft.master.Master` is one master replica; `mrraft.cli.RuntimeMaster`
  starts several.
- `mrraft.node.Raft`, `mrraft.mediantracker.MedianTracker` and
  `mrraft.persister.Persister` are the consensus pieces underneath;
  `mrraft.rpc.RpcServer` and `RpcClient` carry the calls between processes.

## What it does not do

- Raft state is kept only in memory (`Persister`); nothing is written to
  disk, so a restarted replica starts empty. The commands do not take
  snapshots of the log.
- Applications cannot be loaded from outside the package; only the inverted
  index is available to the worker command.
- The RPC layer sends pickled Python objects over plain TCP with no
  authentication. Run it only on a network where every peer is trusted.
- There is no shared storage: workers and input files must see the same
  directory.

## Running the tests

```
pip install ".[test]"
pytest
```
# fman

`fman` provides the parts of a background scan daemon for a file
manager. Directory scans are queued as jobs. A daemon on a Unix domain
socket accepts them, and a client submits them and asks about them.
The package has no dependencies outside the standard library. It needs
a POSIX system with Unix sockets.

## Modules

- `fman.models` holds the shared data types: `Job`, `JobProgress`,
  `ScanRequest`, `DaemonStatus`, `Request`, `Response`, `Message` and
  `DaemonConfig`. The enums are `JobStatus`, `MessageType` and
  `RequestType`. Every model converts to and from plain dictionaries
  with `to_dict()` and `from_dict()`. Helpers: `default_config()`,
  `new_job(path, options)`, `generate_job_id()` and
  `is_process_running(pid_path)`.
- `fman.jobqueue.JobQueue` is a thread-safe FIFO of pending jobs. It
  also tracks a running set and a bounded history of completed, failed
  and cancelled jobs.
- `fman.pathutil.PathChecker` normalises paths and detects overlaps
  between them.
- `fman.resource_monitor.ResourceMonitor` samples memory and CPU and
  decides when workers should throttle.
- `fman.server.DaemonServer` and `fman.client.DaemonClient` are the
  socket daemon and its client.

A failure raises an exception. Daemon conditions derive from
`fman.models.DaemonError`: `DaemonNotRunningError`,
`DaemonAlreadyRunningError`, `JobNotFoundError`, `InvalidRequestError`,
`SocketExistsError` and `ConnectionFailedError`.

## Jobs

```python
from fman.models import JobStatus, new_job

job = new_job("/data", {"verbose": True})
assert job.status is JobStatus.PENDING
assert not job.is_terminal()
print(job.to_dict()["id"])      # job_xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx
```

`Job.duration()` returns a `timedelta`. It is zero before the job
starts. While the job runs it is the time so far, and once the job
completes it is the total time.

## Job queue

```python
from fman.jobqueue import JobQueue
from fman.models import JobStatus, new_job

queue = JobQueue(max_queue_size=10, max_history=100)
queue.add(new_job("/data", None))
job = queue.next(timeout=1.0)          # now RUNNING
job.status = JobStatus.COMPLETED
queue.update(job)
print(queue.stats()["total_completed"])  # 1
```

`JobQueue` behaves as follows:

- `add()` raises `ValueError` for `None`. It raises `DaemonError` in
  these cases:
  - the job ID is already known;
  - the queue is full;
  - a job for the same path is already pending or running.
- `next()` blocks until a job is available. It raises `TimeoutError`
  when the timeout expires, and `InterruptedError` when the
  `threading.Event` passed as `cancel` is set.
- `get()` and `list()` return copies of jobs. `list()` with no status
  returns every known job.
- `cancel()` works only on pending or running jobs. `clear()` drops
  every pending job.
- A queue size or history limit of zero or below falls back to 100
  and 1000.

## Paths and conflicts

```python
from fman.pathutil import PathChecker

checker = PathChecker()
result = checker.optimize_paths(["/data", "/data/photos", "/logs"])
print(result.optimized_paths)   # ['/data', '/logs']
print(result.removed_paths)     # ['/data/photos']
print(result)                   # Optimized: 2 paths, Removed: 1 paths, Conflicts: 1

conflict = checker.has_conflict("/data/photos/2024", ["/data"])
print(conflict.type)            # child_parent
```

`normalize_path()` produces the form that comparisons use:

- The path is made absolute and its symlinks are resolved. If the path
  does not exist, only its parent directory is resolved.
- Separators become forward slashes, and a trailing slash is removed.
- On Windows and macOS the path is lower-cased.

Results are cached. Use `cache_size()` and `clear_cache()` to inspect
and reset the cache.

`has_conflict()` returns the first `PathConflict` it finds, or `None`.
A `PathConflict` has one of these `ConflictType` values: `DUPLICATE`,
`PARENT_CHILD` (the new path is a parent of an existing one),
`CHILD_PARENT` (the new path is a child of an existing one) or
`INVALID`.

## Resource monitor

```python
from fman.resource_monitor import ResourceLimits, ResourceMonitor

monitor = ResourceMonitor(ResourceLimits(max_memory_mb=200, max_cpu_percent=50.0))
status = monitor.check()         # sample now
if monitor.should_throttle():
    monitor.wait_if_throttling() # sleeps throttle_delay seconds
monitor.start()                  # background sampling every check_interval seconds
monitor.stop()
```

Any limit left at zero falls back to its default: 500 MB, 25 %, 5 s
and 0.1 s. The CPU figure is a rough estimate based on the number of
threads per CPU. You can pass `memory_probe` and `cpu_probe` callables
to supply your own measurements.

## Server

```python
import threading
from fman.models import DaemonConfig, JobStatus
from fman.server import DaemonServer

def make_worker(index, queue, stop_event):
    def run():
        while not stop_event.is_set():
            try:
                job = queue.next(cancel=stop_event)
            except InterruptedError:
                return
            # ... scan job.path ...
            job.status = JobStatus.COMPLETED
            queue.update(job)
    return threading.Thread(target=run, daemon=True)

config = DaemonConfig(socket_path="/tmp/fman/d.sock", pid_path="/tmp/fman/d.pid", max_workers=2)
server = DaemonServer(config, worker_factory=make_worker)
server.start()
...
server.stop()
```

`start()` does the following:

1. It creates the socket directory.
2. It binds the socket with mode 0600.
3. It writes the PID file.
4. It starts one worker per `max_workers` through the factory.
5. It installs SIGINT/SIGTERM handlers that stop the server, but only
   when called from the main thread and only when `handle_signals` is
   true.

`stop()` joins the workers and removes the socket and PID files. If
the PID file names a live process, `start()` raises
`DaemonAlreadyRunningError`.

Relative `socket_path` and `pid_path` values are placed under `~/.fman`.

### Protocol

Each message is one JSON object per line. It has `type`, `id` and
`timestamp`, plus a `request` or a `response` object. These request
types are supported:

| Request type  | `data`                              | Effect                       |
|---------------|-------------------------------------|------------------------------|
| `scan`        | `{"path", "options"}`               | Queues a job.                |
| `status`      | none                                | Returns the daemon status.   |
| `job_status`  | job ID                              | Returns the job.             |
| `job_list`    | status string, or empty for all     | Lists jobs.                  |
| `job_cancel`  | job ID                              | Cancels the job.             |
| `queue_clear` | none                                | Drops pending jobs.          |
| `shutdown`    | none                                | Stops the server about 0.1 s later. |

Each reply carries the same `id` and a `response` with `success`,
`data` and `error`. You can also call `DaemonServer.handle_message()`
directly with a `Message`.

## Client

```python
from fman.client import DaemonClient
from fman.models import DaemonConfig, ScanRequest

config = DaemonConfig(socket_path="/tmp/fman/d.sock", pid_path="/tmp/fman/d.pid")
with DaemonClient(config) as client:
    job = client.enqueue_scan(ScanRequest(path="/data"))
    print(client.get_job(job.id).status)
    print(client.get_status().queued_jobs)
    print([j.id for j in client.list_jobs("pending")])
```

These methods are available: `get_status()`, `enqueue_scan()`,
`get_job()`, `cancel_job()`, `list_jobs()`, `clear_queue()` and
`stop_daemon()`. A request the daemon refuses raises `DaemonError`
with the daemon's error text.

`connect()` retries `retry_count` times. The defaults are a 5-second
timeout and 2 retries. If the first attempt fails and no daemon is
running, the client tries to start one. It runs `daemon_command`,
which defaults to the current program, with the arguments
`daemon start`. `start_daemon()` does the same with
`daemon start --background` in a new session. Both then wait for the
socket to accept connections.

Set `test_mode=True`, or set the environment variable
`FMAN_TEST_MODE=1`, and the client never starts a daemon. The
environment variable also sets a 0.1-second timeout and no retries.

## What this package does not do

- It does not scan directories. Jobs carry a path and an options
  dictionary, and a worker supplied through `worker_factory` does the
  scanning. With no factory, the server queues jobs and no jobs run.
- It installs no command-line program. No command answers
  `daemon start`. To start a daemon automatically, pass a
  `daemon_command` that starts a `DaemonServer`, or run the server
  yourself.
- Jobs are held in memory only and are lost when the daemon stops.
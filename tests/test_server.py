import json
import os
import shutil
import socket
import tempfile
import threading
import time
from pathlib import Path

import pytest

from fman.jobqueue import JobQueue
from fman.models import (
    DaemonAlreadyRunningError,
    DaemonConfig,
    DaemonError,
    DaemonNotRunningError,
    Job,
    JobNotFoundError,
    JobStatus,
    Message,
    MessageType,
    Request,
    RequestType,
    ScanRequest,
    default_config,
    is_process_running,
)
from fman.server import DaemonServer


class FakeQueue:
    def __init__(self):
        self.calls = []
        self.add_error = None
        self.cancel_error = None
        self.clear_error = None
        self.list_error = None
        self.jobs = {}
        self.list_result = []
        self.stats_result = {"pending": 0, "running": 0, "completed": 0, "failed": 0}

    def add(self, job):
        self.calls.append(("add", job))
        if self.add_error is not None:
            raise self.add_error

    def next(self, timeout=None, cancel=None):
        raise TimeoutError("no jobs")

    def get(self, job_id):
        self.calls.append(("get", job_id))
        if job_id in self.jobs:
            return self.jobs[job_id]
        raise JobNotFoundError()

    def update(self, job):
        self.calls.append(("update", job))

    def list(self, status=None):
        self.calls.append(("list", status))
        if self.list_error is not None:
            raise self.list_error
        return self.list_result

    def cancel(self, job_id):
        self.calls.append(("cancel", job_id))
        if self.cancel_error is not None:
            raise self.cancel_error

    def clear(self):
        self.calls.append(("clear",))
        if self.clear_error is not None:
            raise self.clear_error

    def size(self):
        return 0

    def stats(self):
        self.calls.append(("stats",))
        return dict(self.stats_result)


@pytest.fixture
def short_dir():
    base = "/tmp" if os.path.isdir("/tmp") else None
    path = tempfile.mkdtemp(prefix="fm", dir=base)
    yield Path(path)
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def make_server(short_dir):
    servers = []

    def factory(queue=None, worker_factory=None, max_workers=2):
        config = DaemonConfig(
            socket_path=str(short_dir / "s.sock"),
            pid_path=str(short_dir / "d.pid"),
            max_workers=max_workers,
            queue_size=10,
        )
        server = DaemonServer(
            config,
            queue if queue is not None else FakeQueue(),
            worker_factory=worker_factory,
            handle_signals=False,
        )
        server.start()
        servers.append(server)
        return server

    yield factory
    for server in servers:
        if server.is_running():
            server.stop()


def _request(kind, data=None, message_id="test-id"):
    return Message(type=MessageType.REQUEST, id=message_id, request=Request(kind, data))


def _exchange(path, payload):
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.settimeout(5)
        sock.connect(path)
        sock.sendall(payload)
        with sock.makefile("rb") as reader:
            line = reader.readline()
    return json.loads(line)


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_nil_config_uses_defaults():
    queue = FakeQueue()
    server = DaemonServer(None, queue)
    assert server.config == default_config()
    assert server.queue is queue


def test_given_config_is_kept():
    config = DaemonConfig(socket_path="test.sock")
    server = DaemonServer(config, FakeQueue())
    assert server.config is config


def test_not_running_initially():
    server = DaemonServer(None, FakeQueue())
    assert server.is_running() is False


def test_operations_require_running_daemon():
    queue = FakeQueue()
    server = DaemonServer(None, queue)
    with pytest.raises(DaemonNotRunningError):
        server.enqueue_scan(ScanRequest("/test/path", {"verbose": True}))
    with pytest.raises(DaemonNotRunningError):
        server.get_job("test-job-id")
    with pytest.raises(DaemonNotRunningError):
        server.cancel_job("test-job-id")
    with pytest.raises(DaemonNotRunningError):
        server.list_jobs(JobStatus.PENDING)
    with pytest.raises(DaemonNotRunningError):
        server.clear_queue()
    with pytest.raises(DaemonNotRunningError):
        server.status()
    assert queue.calls == []


def test_stop_not_running():
    server = DaemonServer(None, FakeQueue())
    with pytest.raises(DaemonNotRunningError):
        server.stop()


def test_enqueue_scan_success(make_server):
    queue = FakeQueue()
    server = make_server(queue)
    job = server.enqueue_scan(ScanRequest("/test/path", {"verbose": True}))
    assert job.path == "/test/path"
    assert job.options == {"verbose": True}
    assert queue.calls == [("add", job)]


def test_enqueue_scan_queue_error(make_server):
    queue = FakeQueue()
    queue.add_error = DaemonError("queue full")
    server = make_server(queue)
    with pytest.raises(DaemonError, match="failed to enqueue job: queue full"):
        server.enqueue_scan(ScanRequest("/test/path"))


def test_get_job(make_server):
    queue = FakeQueue()
    job = Job(id="test-job-id", path="/x")
    queue.jobs["test-job-id"] = job
    server = make_server(queue)
    assert server.get_job("test-job-id") is job
    with pytest.raises(JobNotFoundError):
        server.get_job("nonexistent")


def test_status_reports_queue_counts(make_server):
    queue = FakeQueue()
    queue.stats_result = {"pending": 5, "running": 2, "completed": 10, "failed": 1}
    server = make_server(queue)
    status = server.status()
    assert status.running is True
    assert status.pid == os.getpid()
    assert status.active_jobs == 2
    assert status.queued_jobs == 5
    assert status.completed_jobs == 10
    assert status.failed_jobs == 1
    assert status.workers == 0
    assert status.started_at is not None


def test_cancel_job(make_server):
    queue = FakeQueue()
    server = make_server(queue)
    server.cancel_job("test-job-id")
    assert queue.calls[-1] == ("cancel", "test-job-id")
    queue.cancel_error = JobNotFoundError()
    with pytest.raises(JobNotFoundError):
        server.cancel_job("test-job-id")


def test_list_jobs(make_server):
    queue = FakeQueue()
    jobs = [Job(id="job1", path="/a"), Job(id="job2", path="/b")]
    queue.list_result = jobs
    server = make_server(queue)
    assert server.list_jobs(JobStatus.PENDING) == jobs
    assert queue.calls[-1] == ("list", JobStatus.PENDING)
    queue.list_error = DaemonError("database error")
    with pytest.raises(DaemonError, match="database error"):
        server.list_jobs(JobStatus.PENDING)


def test_clear_queue(make_server):
    queue = FakeQueue()
    server = make_server(queue)
    server.clear_queue()
    assert queue.calls[-1] == ("clear",)
    queue.clear_error = DaemonError("operation failed")
    with pytest.raises(DaemonError, match="operation failed"):
        server.clear_queue()


def test_relative_paths_live_in_state_dir():
    server = DaemonServer(DaemonConfig(socket_path="test.sock", pid_path="test.pid"), FakeQueue())
    assert server.socket_path().endswith("test.sock")
    assert server.pid_path().endswith("test.pid")
    assert ".fman" in server.socket_path()
    assert ".fman" in server.pid_path()


def test_absolute_paths_are_kept(tmp_path):
    config = DaemonConfig(
        socket_path=str(tmp_path / "test.sock"), pid_path=str(tmp_path / "test.pid")
    )
    server = DaemonServer(config, FakeQueue())
    assert server.socket_path() == str(tmp_path / "test.sock")
    assert server.pid_path() == str(tmp_path / "test.pid")


def test_pid_file_write_and_remove(tmp_path):
    server = DaemonServer(DaemonConfig(pid_path=str(tmp_path / "test.pid")), FakeQueue())
    server.write_pid_file()
    pid_path = Path(server.pid_path())
    assert int(pid_path.read_text()) == os.getpid()
    assert is_process_running(pid_path) is True

    server.remove_pid_file()
    assert not pid_path.exists()
    assert is_process_running(pid_path) is False

    server.remove_pid_file()
    assert not pid_path.exists()


def test_socket_file_removal(tmp_path):
    server = DaemonServer(DaemonConfig(socket_path=str(tmp_path / "test.sock")), FakeQueue())
    server.remove_socket_file()
    assert not Path(server.socket_path()).exists()

    Path(server.socket_path()).write_text("")
    server.remove_socket_file()
    assert not Path(server.socket_path()).exists()


def test_handle_scan_request(make_server):
    queue = FakeQueue()
    server = make_server(queue)
    reply = server.handle_message(
        _request(RequestType.SCAN, {"path": "/test/path", "options": {"verbose": True}})
    )
    assert reply.type is MessageType.RESPONSE
    assert reply.id == "test-id"
    assert reply.response.success is True
    assert reply.response.data.path == "/test/path"
    assert queue.calls[0][0] == "add"


def test_handle_scan_request_with_invalid_data(make_server):
    server = make_server(FakeQueue())
    reply = server.handle_message(_request(RequestType.SCAN, "invalid", "scan-invalid-id"))
    assert reply.id == "scan-invalid-id"
    assert reply.response.success is False
    assert "invalid scan request" in reply.response.error


def test_handle_scan_request_without_data(make_server):
    server = make_server(FakeQueue())
    reply = server.handle_message(_request(RequestType.SCAN))
    assert reply.response.success is False
    assert "missing request data" in reply.response.error


def test_handle_status_request(make_server):
    queue = FakeQueue()
    queue.stats_result = {"pending": 1, "running": 0, "completed": 2, "failed": 0}
    server = make_server(queue)
    reply = server.handle_message(_request(RequestType.STATUS, message_id="status-id"))
    assert reply.id == "status-id"
    assert reply.response.success is True
    assert reply.response.data.queued_jobs == 1
    assert reply.response.data.completed_jobs == 2


def test_handle_status_request_when_not_running():
    server = DaemonServer(None, FakeQueue())
    reply = server.handle_message(_request(RequestType.STATUS, message_id="status-not-running-id"))
    assert reply.id == "status-not-running-id"
    assert reply.response.success is False
    assert "failed to get status" in reply.response.error


def test_handle_missing_request():
    server = DaemonServer(None, FakeQueue())
    reply = server.handle_message(Message(type=MessageType.REQUEST, id="invalid-id"))
    assert reply.type is MessageType.RESPONSE
    assert reply.id == "invalid-id"
    assert reply.response.success is False
    assert "missing request" in reply.response.error


def test_handle_unknown_request_type():
    server = DaemonServer(None, FakeQueue())
    reply = server.handle_message(_request("unknown", message_id="unknown-id"))
    assert reply.id == "unknown-id"
    assert reply.response.success is False
    assert "unknown request type" in reply.response.error


def test_handle_job_status_request(make_server):
    queue = FakeQueue()
    job = Job(id="test-job", path="/p", status=JobStatus.PENDING)
    queue.jobs["test-job"] = job
    server = make_server(queue)
    reply = server.handle_message(_request(RequestType.JOB_STATUS, "test-job", "job-status-id"))
    assert reply.id == "job-status-id"
    assert reply.response.success is True
    assert reply.response.data is job


@pytest.mark.parametrize("kind", [RequestType.JOB_STATUS, RequestType.JOB_CANCEL])
def test_job_requests_need_string_id(make_server, kind):
    server = make_server(FakeQueue())
    reply = server.handle_message(_request(kind, 123))
    assert reply.response.success is False
    assert "job ID must be a string" in reply.response.error


def test_handle_job_list_request(make_server):
    queue = FakeQueue()
    jobs = [
        Job(id="job1", path="/a", status=JobStatus.PENDING),
        Job(id="job2", path="/b", status=JobStatus.RUNNING),
    ]
    queue.list_result = jobs
    server = make_server(queue)
    reply = server.handle_message(_request(RequestType.JOB_LIST, None, "job-list-id"))
    assert reply.response.success is True
    assert reply.response.data == jobs
    assert queue.calls[-1] == ("list", "")


def test_handle_job_cancel_and_clear_requests(make_server):
    queue = FakeQueue()
    server = make_server(queue)
    reply = server.handle_message(_request(RequestType.JOB_CANCEL, "test-job", "job-cancel-id"))
    assert reply.response.success is True
    assert ("cancel", "test-job") in queue.calls
    reply = server.handle_message(_request(RequestType.QUEUE_CLEAR, message_id="queue-clear-id"))
    assert reply.id == "queue-clear-id"
    assert reply.response.success is True
    assert ("clear",) in queue.calls


def test_handle_job_status_not_found(make_server):
    server = make_server(FakeQueue())
    reply = server.handle_message(_request(RequestType.JOB_STATUS, "missing"))
    assert reply.response.success is False
    assert reply.response.error == "failed to get job: job not found"


def test_handle_shutdown_request(make_server):
    server = make_server(FakeQueue())
    pid_path = Path(server.pid_path())
    reply = server.handle_message(_request(RequestType.SHUTDOWN, message_id="shutdown-id"))
    assert reply.id == "shutdown-id"
    assert reply.response.success is True
    assert _wait_for(lambda: not server.is_running())
    assert not pid_path.exists()


def test_start_and_stop_manage_files(make_server):
    server = make_server(FakeQueue())
    assert server.is_running() is True
    assert Path(server.socket_path()).exists()
    assert Path(server.pid_path()).exists()

    server.stop()
    assert server.is_running() is False
    assert not Path(server.socket_path()).exists()
    assert not Path(server.pid_path()).exists()


def test_start_twice_fails(make_server):
    server = make_server(FakeQueue())
    with pytest.raises(DaemonAlreadyRunningError):
        server.start()


def test_start_fails_when_pid_file_names_live_process(short_dir):
    pid_path = short_dir / "d.pid"
    pid_path.write_text(str(os.getpid()))
    config = DaemonConfig(socket_path=str(short_dir / "s.sock"), pid_path=str(pid_path))
    server = DaemonServer(config, FakeQueue(), handle_signals=False)
    with pytest.raises(DaemonAlreadyRunningError):
        server.start()
    assert not (short_dir / "s.sock").exists()


def test_start_fails_with_invalid_socket_directory(short_dir):
    blocker = short_dir / "file.txt"
    blocker.write_text("x")
    config = DaemonConfig(
        socket_path=str(blocker / "sub" / "test.sock"), pid_path=str(short_dir / "d.pid")
    )
    server = DaemonServer(config, FakeQueue(), handle_signals=False)
    with pytest.raises(DaemonError, match="failed to create socket directory"):
        server.start()
    assert server.is_running() is False


def test_socket_round_trip(make_server):
    queue = JobQueue(10, 10)
    server = make_server(queue)
    message = _request(RequestType.SCAN, {"path": "/test/path", "options": {"verbose": True}}, "abc")
    reply = _exchange(server.socket_path(), json.dumps(message.to_dict()).encode() + b"\n")
    assert reply["type"] == "response"
    assert reply["id"] == "abc"
    assert reply["response"]["success"] is True
    data = reply["response"]["data"]
    assert data["path"] == "/test/path"
    assert data["status"] == "pending"

    status_msg = _request(RequestType.JOB_STATUS, data["id"], "def")
    reply = _exchange(server.socket_path(), json.dumps(status_msg.to_dict()).encode() + b"\n")
    assert reply["response"]["data"]["id"] == data["id"]
    assert queue.size() == 1


def test_socket_rejects_invalid_json(make_server):
    server = make_server(FakeQueue())
    reply = _exchange(server.socket_path(), b"not json\n")
    assert reply["response"]["success"] is False
    assert "failed to decode message" in reply["response"]["error"]


def test_workers_process_jobs(make_server):
    queue = JobQueue(10, 10)

    def worker_factory(index, job_queue, stop_event):
        def run():
            while True:
                try:
                    job = job_queue.next(cancel=stop_event)
                except InterruptedError:
                    return
                job.status = JobStatus.COMPLETED
                job_queue.update(job)

        return threading.Thread(target=run, daemon=True)

    server = make_server(queue, worker_factory=worker_factory, max_workers=2)
    assert server.status().workers == 2
    job = server.enqueue_scan(ScanRequest("/data"))
    assert _wait_for(lambda: queue.get(job.id).status is JobStatus.COMPLETED)
    server.stop()
    assert server.is_running() is False
    assert queue.stats()["total_completed"] == 1
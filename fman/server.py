"""Unix-socket daemon that accepts scan jobs and reports on their progress."""

from __future__ import annotations

import json
import os
import signal
import socket
import tempfile
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Protocol

from fman.jobqueue import JobQueue
from fman.models import (
    STATE_DIR_NAME,
    DaemonAlreadyRunningError,
    DaemonConfig,
    DaemonError,
    DaemonNotRunningError,
    DaemonStatus,
    InvalidRequestError,
    Job,
    JobStatus,
    Message,
    MessageType,
    Request,
    RequestType,
    Response,
    ScanRequest,
    default_config,
    is_process_running,
    new_job,
)

_ACCEPT_POLL_INTERVAL = 0.2
_SHUTDOWN_DELAY = 0.1
_HANDLED_ERRORS = (DaemonError, ValueError, OSError)


class QueueLike(Protocol):
    """Operations the server needs from its job queue."""

    def add(self, job: Job) -> None: ...

    def next(self, timeout: float | None = None, cancel: threading.Event | None = None) -> Job: ...

    def get(self, job_id: str) -> Job: ...

    def update(self, job: Job) -> None: ...

    def list(self, status: JobStatus | str | None = None) -> list[Job]: ...

    def cancel(self, job_id: str) -> None: ...

    def clear(self) -> None: ...

    def size(self) -> int: ...

    def stats(self) -> dict[str, int]: ...


WorkerFactory = Callable[[int, QueueLike, threading.Event], threading.Thread]


def _state_path(configured: str) -> str:
    path = Path(configured)
    if path.is_absolute():
        return str(path)
    try:
        home = Path.home()
    except RuntimeError:
        return str(Path(tempfile.gettempdir()) / STATE_DIR_NAME / path)
    return str(home / STATE_DIR_NAME / path)


def _remove_file(path: str) -> None:
    Path(path).unlink(missing_ok=True)


def _status_argument(value: Any) -> JobStatus | str:
    if not isinstance(value, str):
        return ""
    try:
        return JobStatus(value)
    except ValueError:
        return value


class DaemonServer:
    """Listens on a Unix socket, queues scan jobs and answers job queries.

    Workers are threads built by ``worker_factory`` (one per configured
    worker); each receives its index, the queue and an event that is set
    when the server stops.
    """

    def __init__(
        self,
        config: DaemonConfig | None = None,
        queue: QueueLike | None = None,
        *,
        worker_factory: WorkerFactory | None = None,
        handle_signals: bool = True,
    ) -> None:
        self.config = config if config is not None else default_config()
        self.queue: QueueLike = queue if queue is not None else JobQueue(self.config.queue_size)
        self._worker_factory = worker_factory
        self._handle_signals = handle_signals
        self._lock = threading.RLock()
        self._running = False
        self._started_at: datetime | None = None
        self._listener: socket.socket | None = None
        self._accept_thread: threading.Thread | None = None
        self._shutdown = threading.Event()
        self._workers: list[threading.Thread] = []
        self._previous_handlers: dict[int, Any] = {}

    # Lifecycle

    def start(self) -> None:
        """Bind the socket, write the PID file and start serving."""
        with self._lock:
            if self._running or is_process_running(self.pid_path()):
                raise DaemonAlreadyRunningError()

            socket_path = self.socket_path()
            try:
                Path(socket_path).parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise DaemonError(f"failed to create socket directory: {exc}") from exc
            try:
                self.remove_socket_file()
            except OSError as exc:
                raise DaemonError(f"failed to remove existing socket: {exc}") from exc

            listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                listener.bind(socket_path)
                listener.listen()
            except OSError as exc:
                listener.close()
                raise DaemonError(f"failed to create socket listener: {exc}") from exc
            try:
                os.chmod(socket_path, 0o600)
            except OSError as exc:
                listener.close()
                raise DaemonError(f"failed to set socket permissions: {exc}") from exc
            try:
                self.write_pid_file()
            except OSError as exc:
                listener.close()
                self._remove_quietly(socket_path)
                raise DaemonError(f"failed to write PID file: {exc}") from exc

            listener.settimeout(_ACCEPT_POLL_INTERVAL)
            self._listener = listener
            self._shutdown = threading.Event()
            self._running = True
            self._started_at = datetime.now().astimezone()

            self._start_workers()
            if self._handle_signals:
                self._install_signal_handlers()
            self._accept_thread = threading.Thread(
                target=self._accept_loop,
                args=(listener, self._shutdown),
                name="fman-daemon-accept",
                daemon=True,
            )
            self._accept_thread.start()

    def stop(self) -> None:
        """Stop workers, close the socket and remove the socket and PID files."""
        with self._lock:
            if not self._running:
                raise DaemonNotRunningError()
            self._shutdown.set()
            current = threading.current_thread()
            for worker in self._workers:
                if worker is not current:
                    worker.join()
            self._workers = []
            if self._listener is not None:
                self._listener.close()
                self._listener = None
            if self._accept_thread is not None and self._accept_thread is not current:
                self._accept_thread.join()
            self._accept_thread = None
            self._remove_quietly(self.socket_path())
            self._remove_quietly(self.pid_path())
            self._restore_signal_handlers()
            self._running = False

    def status(self) -> DaemonStatus:
        """Current daemon state with the queue's counts."""
        with self._lock:
            if not self._running:
                raise DaemonNotRunningError()
            stats = self.queue.stats()
            return DaemonStatus(
                running=True,
                pid=os.getpid(),
                started_at=self._started_at,
                active_jobs=stats.get("running", 0),
                queued_jobs=stats.get("pending", 0),
                completed_jobs=stats.get("completed", 0),
                failed_jobs=stats.get("failed", 0),
                workers=len(self._workers),
            )

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    # Job operations

    def _require_running(self) -> None:
        if not self.is_running():
            raise DaemonNotRunningError()

    def enqueue_scan(self, request: ScanRequest) -> Job:
        """Create a job for ``request`` and queue it."""
        self._require_running()
        job = new_job(request.path, request.options)
        try:
            self.queue.add(job)
        except (DaemonError, ValueError) as exc:
            raise DaemonError(f"failed to enqueue job: {exc}") from exc
        return job

    def get_job(self, job_id: str) -> Job:
        self._require_running()
        return self.queue.get(job_id)

    def cancel_job(self, job_id: str) -> None:
        self._require_running()
        self.queue.cancel(job_id)

    def list_jobs(self, status: JobStatus | str | None = "") -> list[Job]:
        self._require_running()
        return self.queue.list(status)

    def clear_queue(self) -> None:
        self._require_running()
        self.queue.clear()

    # Protocol

    def handle_message(self, message: Message) -> Message:
        """Answer one request message with a response message of the same ID."""
        response = Response()
        reply = Message(type=MessageType.RESPONSE, id=message.id, response=response)
        request = message.request
        if request is None:
            response.error = "missing request"
            return reply
        try:
            kind = RequestType(request.type)
        except ValueError:
            response.error = "unknown request type"
            return reply

        handler = {
            RequestType.SCAN: self._handle_scan,
            RequestType.STATUS: self._handle_status,
            RequestType.JOB_STATUS: self._handle_job_status,
            RequestType.JOB_LIST: self._handle_job_list,
            RequestType.JOB_CANCEL: self._handle_job_cancel,
            RequestType.QUEUE_CLEAR: self._handle_queue_clear,
            RequestType.SHUTDOWN: self._handle_shutdown,
        }[kind]
        try:
            response.data = handler(request)
        except _HANDLED_ERRORS as exc:
            response.success = False
            response.error = str(exc)
        else:
            response.success = True
        return reply

    def _handle_scan(self, request: Request) -> Job:
        if request.data is None:
            raise InvalidRequestError("invalid scan request: missing request data")
        try:
            scan = ScanRequest.from_dict(request.data)
        except InvalidRequestError as exc:
            raise InvalidRequestError(f"invalid scan request: {exc}") from exc
        try:
            return self.enqueue_scan(scan)
        except DaemonError as exc:
            raise DaemonError(f"failed to enqueue scan: {exc}") from exc

    def _handle_status(self, request: Request) -> DaemonStatus:
        try:
            return self.status()
        except DaemonError as exc:
            raise DaemonError(f"failed to get status: {exc}") from exc

    def _handle_job_status(self, request: Request) -> Job:
        if not isinstance(request.data, str):
            raise InvalidRequestError("job ID must be a string")
        try:
            return self.get_job(request.data)
        except DaemonError as exc:
            raise DaemonError(f"failed to get job: {exc}") from exc

    def _handle_job_list(self, request: Request) -> list[Job]:
        try:
            return self.list_jobs(_status_argument(request.data))
        except DaemonError as exc:
            raise DaemonError(f"failed to list jobs: {exc}") from exc

    def _handle_job_cancel(self, request: Request) -> None:
        if not isinstance(request.data, str):
            raise InvalidRequestError("job ID must be a string")
        try:
            self.cancel_job(request.data)
        except DaemonError as exc:
            raise DaemonError(f"failed to cancel job: {exc}") from exc

    def _handle_queue_clear(self, request: Request) -> None:
        try:
            self.clear_queue()
        except DaemonError as exc:
            raise DaemonError(f"failed to clear queue: {exc}") from exc

    def _handle_shutdown(self, request: Request) -> None:
        def delayed_stop() -> None:
            time.sleep(_SHUTDOWN_DELAY)
            self._stop_quietly()

        threading.Thread(target=delayed_stop, name="fman-daemon-shutdown", daemon=True).start()

    # Files

    def socket_path(self) -> str:
        """Socket location; relative paths live in the user's state directory."""
        return _state_path(self.config.socket_path)

    def pid_path(self) -> str:
        """PID file location; relative paths live in the user's state directory."""
        return _state_path(self.config.pid_path)

    def write_pid_file(self) -> None:
        path = Path(self.pid_path())
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(str(os.getpid()))
        os.chmod(path, 0o644)

    def remove_pid_file(self) -> None:
        _remove_file(self.pid_path())

    def remove_socket_file(self) -> None:
        _remove_file(self.socket_path())

    # Internals

    @staticmethod
    def _remove_quietly(path: str) -> None:
        try:
            _remove_file(path)
        except OSError:
            pass

    def _stop_quietly(self) -> None:
        try:
            self.stop()
        except DaemonNotRunningError:
            pass

    def _start_workers(self) -> None:
        self._workers = []
        if self._worker_factory is None:
            return
        for index in range(max(self.config.max_workers, 0)):
            worker = self._worker_factory(index, self.queue, self._shutdown)
            self._workers.append(worker)
            worker.start()

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.signal(signum, self._on_signal)

    def _restore_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for signum, previous in self._previous_handlers.items():
            signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
        self._previous_handlers = {}

    def _on_signal(self, signum: int, frame: Any) -> None:
        if self.is_running():
            threading.Thread(target=self._stop_quietly, daemon=True).start()
            return
        previous = self._previous_handlers.get(signum, signal.SIG_DFL)
        if callable(previous):
            previous(signum, frame)
        elif previous == signal.SIG_DFL:
            signal.signal(signum, signal.SIG_DFL)
            os.kill(os.getpid(), signum)

    def _accept_loop(self, listener: socket.socket, shutdown: threading.Event) -> None:
        while not shutdown.is_set():
            try:
                conn, _ = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                if shutdown.is_set():
                    return
                time.sleep(_ACCEPT_POLL_INTERVAL)
                continue
            conn.setblocking(True)
            threading.Thread(
                target=self._serve_connection, args=(conn,), name="fman-daemon-conn", daemon=True
            ).start()

    def _serve_connection(self, conn: socket.socket) -> None:
        try:
            with conn, conn.makefile("rb") as reader:
                for line in reader:
                    if not line.strip():
                        continue
                    try:
                        message = Message.from_dict(json.loads(line))
                    except (ValueError, DaemonError) as exc:
                        error = Message(
                            type=MessageType.RESPONSE,
                            response=Response(success=False, error=f"failed to decode message: {exc}"),
                        )
                        self._send(conn, error)
                        return
                    self._send(conn, self.handle_message(message))
        except OSError:
            return

    @staticmethod
    def _send(conn: socket.socket, message: Message) -> None:
        conn.sendall(json.dumps(message.to_dict()).encode() + b"\n")
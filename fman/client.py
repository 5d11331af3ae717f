"""Client side of the daemon's Unix-socket protocol."""

from __future__ import annotations

import json
import os
import socket
import subprocess
import sys
import time
import uuid
from pathlib import Path
from typing import Any, BinaryIO, Sequence

from fman.models import (
    STATE_DIR_NAME,
    ConnectionFailedError,
    DaemonAlreadyRunningError,
    DaemonConfig,
    DaemonError,
    DaemonStatus,
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
)

DEFAULT_TIMEOUT = 5.0
DEFAULT_RETRY_COUNT = 2
TEST_MODE_TIMEOUT = 0.1
TEST_MODE_ENV = "FMAN_TEST_MODE"

_RETRY_DELAY = 0.5
_TEST_MODE_RETRY_DELAY = 0.1
_AUTOSTART_TIMEOUT = 1.0
_START_TIMEOUT = 3.0
_FIRST_CHECK_INTERVAL = 0.1
_MAX_CHECK_INTERVAL = 1.0


def _current_program() -> list[str]:
    argv0 = sys.argv[0] if sys.argv else ""
    if not argv0:
        raise DaemonError("failed to get executable path: program name unknown")
    program = os.path.abspath(argv0)
    if program.endswith(".py"):
        return [sys.executable, program]
    return [program]


class DaemonClient:
    """Talks to the daemon over its socket, starting the daemon when needed.

    ``timeout`` is in seconds. With ``test_mode`` set (or the
    ``FMAN_TEST_MODE=1`` environment variable) the client never tries to
    start a daemon and uses a short timeout with no retries.
    """

    def __init__(
        self,
        config: DaemonConfig | None = None,
        *,
        timeout: float | None = None,
        retry_count: int | None = None,
        test_mode: bool | None = None,
        daemon_command: Sequence[str] | None = None,
    ) -> None:
        self.config = config if config is not None else default_config()
        env_test_mode = os.environ.get(TEST_MODE_ENV) == "1"
        self.test_mode = env_test_mode if test_mode is None else test_mode
        if env_test_mode:
            default_timeout, default_retries = TEST_MODE_TIMEOUT, 0
        else:
            default_timeout, default_retries = DEFAULT_TIMEOUT, DEFAULT_RETRY_COUNT
        self.timeout = default_timeout if timeout is None else timeout
        self.retry_count = default_retries if retry_count is None else retry_count
        self.daemon_command = list(daemon_command) if daemon_command is not None else None
        self._sock: socket.socket | None = None
        self._reader: BinaryIO | None = None

    def __enter__(self) -> DaemonClient:
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.disconnect()

    # Connection

    def connect(self) -> None:
        """Connect to the daemon, starting it first if it is not running."""
        if self.is_connected():
            return
        last_error: OSError | None = None
        for attempt in range(self.retry_count + 1):
            try:
                sock = self._dial()
            except OSError as exc:
                last_error = exc
            else:
                self._sock = sock
                self._reader = sock.makefile("rb")
                return

            if attempt == 0 and not self.test_mode and not self.is_daemon_running():
                try:
                    self._start_daemon_with_timeout(_AUTOSTART_TIMEOUT)
                except (DaemonError, OSError) as exc:
                    raise DaemonError(f"failed to start daemon: {exc}") from exc
                continue

            if attempt < self.retry_count:
                time.sleep(_TEST_MODE_RETRY_DELAY if self.test_mode else _RETRY_DELAY)

        raise ConnectionFailedError(
            f"failed to connect after {self.retry_count} retries: {last_error}"
        )

    def disconnect(self) -> None:
        """Close the connection if there is one."""
        reader, sock = self._reader, self._sock
        self._reader = None
        self._sock = None
        if reader is not None:
            reader.close()
        if sock is not None:
            sock.close()

    def is_connected(self) -> bool:
        return self._sock is not None

    def send_request(self, request: Request) -> Response:
        """Send ``request`` and return the daemon's matching response."""
        if not self.is_connected():
            try:
                self.connect()
            except DaemonError as exc:
                raise ConnectionFailedError(f"failed to connect: {exc}") from exc

        message = Message(type=MessageType.REQUEST, id=str(uuid.uuid4()), request=request)
        try:
            self._send(message)
        except (OSError, DaemonError) as exc:
            self.disconnect()
            raise DaemonError(f"failed to send request: {exc}") from exc
        try:
            reply = self._receive()
        except (OSError, DaemonError) as exc:
            self.disconnect()
            raise DaemonError(f"failed to receive response: {exc}") from exc

        if reply.type is not MessageType.RESPONSE:
            raise DaemonError(f"unexpected message type: {reply.type}")
        if reply.id != message.id:
            raise DaemonError(
                f"response ID mismatch: expected {message.id}, got {reply.id}"
            )
        if reply.response is None:
            raise DaemonError("missing response data")
        return reply.response

    # Daemon process

    def is_daemon_running(self) -> bool:
        """True if the PID file names a live process."""
        return is_process_running(self.pid_path())

    def start_daemon(self) -> None:
        """Start the daemon in a new session and wait until it accepts connections."""
        if self.is_daemon_running():
            raise DaemonAlreadyRunningError()
        command = self._command() + ["daemon", "start", "--background"]
        try:
            subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise DaemonError(f"failed to start daemon process: {exc}") from exc
        self.wait_for_daemon(_START_TIMEOUT)

    def wait_for_daemon(self, timeout: float) -> None:
        """Wait up to ``timeout`` seconds for the daemon to accept a connection."""
        deadline = time.monotonic() + timeout
        interval = _FIRST_CHECK_INTERVAL
        while time.monotonic() < deadline:
            if self.is_daemon_running():
                try:
                    probe = self._dial()
                except OSError:
                    pass
                else:
                    probe.close()
                    return
            time.sleep(interval)
            interval = min(interval * 2, _MAX_CHECK_INTERVAL)
        raise DaemonError(f"daemon did not start within {timeout}s")

    # Operations

    def stop_daemon(self) -> None:
        self._call(Request(type=RequestType.SHUTDOWN), "send shutdown request", "shutdown")

    def get_status(self) -> DaemonStatus:
        response = self._call(Request(type=RequestType.STATUS), "get status", "status")
        if not isinstance(response.data, dict):
            raise DaemonError("invalid status response format")
        return DaemonStatus.from_dict(response.data)

    def enqueue_scan(self, request: ScanRequest) -> Job:
        response = self._call(Request(type=RequestType.SCAN, data=request), "enqueue scan", "scan")
        if not isinstance(response.data, dict):
            raise DaemonError("invalid job response format")
        return Job.from_dict(response.data)

    def get_job(self, job_id: str) -> Job:
        response = self._call(Request(type=RequestType.JOB_STATUS, data=job_id), "get job", "job")
        if not isinstance(response.data, dict):
            raise DaemonError("invalid job response format")
        return Job.from_dict(response.data)

    def cancel_job(self, job_id: str) -> None:
        self._call(Request(type=RequestType.JOB_CANCEL, data=job_id), "cancel job", "cancel")

    def list_jobs(self, status: JobStatus | str = "") -> list[Job]:
        """Jobs in ``status``, or all jobs when it is empty."""
        request = Request(type=RequestType.JOB_LIST, data=str(status))
        response = self._call(request, "list jobs", "list")
        if not isinstance(response.data, list):
            raise DaemonError("invalid jobs response format")
        return [Job.from_dict(item) for item in response.data]

    def clear_queue(self) -> None:
        self._call(Request(type=RequestType.QUEUE_CLEAR), "clear queue", "clear")

    # Paths

    def socket_path(self) -> str:
        return self._state_path(self.config.socket_path)

    def pid_path(self) -> str:
        return self._state_path(self.config.pid_path)

    # Internals

    @staticmethod
    def _state_path(configured: str) -> str:
        path = Path(configured)
        if path.is_absolute():
            return configured
        try:
            home = Path.home()
        except RuntimeError:
            return configured
        return str(home / STATE_DIR_NAME / path)

    def _command(self) -> list[str]:
        return list(self.daemon_command) if self.daemon_command else _current_program()

    def _start_daemon_with_timeout(self, timeout: float) -> None:
        if self.is_daemon_running():
            return
        command = self._command() + ["daemon", "start"]
        try:
            subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as exc:
            raise DaemonError(f"failed to start daemon process: {exc}") from exc
        self.wait_for_daemon(timeout)

    def _dial(self) -> socket.socket:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(self.socket_path())
        except OSError:
            sock.close()
            raise
        return sock

    def _call(self, request: Request, action: str, label: str) -> Response:
        try:
            response = self.send_request(request)
        except ConnectionFailedError as exc:
            raise ConnectionFailedError(f"failed to {action}: {exc}") from exc
        except DaemonError as exc:
            raise DaemonError(f"failed to {action}: {exc}") from exc
        if not response.success:
            raise DaemonError(f"{label} request failed: {response.error}")
        return response

    def _send(self, message: Message) -> None:
        if self._sock is None:
            raise DaemonError("not connected")
        self._sock.settimeout(self.timeout)
        payload: Any = message.to_dict()
        self._sock.sendall(json.dumps(payload).encode() + b"\n")

    def _receive(self) -> Message:
        if self._sock is None or self._reader is None:
            raise DaemonError("not connected")
        self._sock.settimeout(self.timeout)
        line = self._reader.readline()
        if not line:
            raise DaemonError("failed to decode message: connection closed")
        try:
            return Message.from_dict(json.loads(line))
        except (ValueError, DaemonError) as exc:
            raise DaemonError(f"failed to decode message: {exc}") from exc
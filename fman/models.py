"""Data types shared by the daemon, its job queue and its clients."""

from __future__ import annotations

import os
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

DEFAULT_SOCKET_PATH = "daemon.sock"
DEFAULT_PID_PATH = "daemon.pid"
DEFAULT_MAX_WORKERS = 2
DEFAULT_QUEUE_SIZE = 100
DEFAULT_LOG_LEVEL = "info"
STATE_DIR_NAME = ".fman"

_ZERO_TIME = "0001-01-01T00:00:00Z"
_TIME_RE = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<frac>\d+))?"
    r"(?P<tz>Z|z|[+-]\d{2}:\d{2})?$"
)


class JobStatus(str, Enum):
    """Lifecycle state of a scan job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


class MessageType(str, Enum):
    """Kind of message exchanged over the daemon socket."""

    REQUEST = "request"
    RESPONSE = "response"
    NOTIFICATION = "notification"

    def __str__(self) -> str:
        return self.value


class RequestType(str, Enum):
    """Operation asked of the daemon."""

    SCAN = "scan"
    STATUS = "status"
    JOB_STATUS = "job_status"
    JOB_LIST = "job_list"
    JOB_CANCEL = "job_cancel"
    QUEUE_CLEAR = "queue_clear"
    SHUTDOWN = "shutdown"

    def __str__(self) -> str:
        return self.value


class DaemonError(Exception):
    """Base class for daemon errors."""

    default_message = "daemon error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class DaemonNotRunningError(DaemonError):
    default_message = "daemon is not running"


class DaemonAlreadyRunningError(DaemonError):
    default_message = "daemon is already running"


class JobNotFoundError(DaemonError):
    default_message = "job not found"


class InvalidRequestError(DaemonError):
    default_message = "invalid request"


class SocketExistsError(DaemonError):
    default_message = "socket file already exists"


class ConnectionFailedError(DaemonError):
    default_message = "failed to connect to daemon"


def _now() -> datetime:
    return datetime.now().astimezone()


def _format_time(value: datetime | None) -> str:
    if value is None:
        return _ZERO_TIME
    if value.tzinfo is None:
        value = value.astimezone()
    return value.isoformat()


def _parse_time(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise InvalidRequestError(f"invalid timestamp: {value!r}")
    match = _TIME_RE.match(value.strip())
    if match is None:
        raise InvalidRequestError(f"invalid timestamp: {value!r}")
    if match["base"] == "0001-01-01T00:00:00":
        return None
    text = match["base"]
    if match["frac"]:
        text += "." + match["frac"][:6].ljust(6, "0")
    tz = match["tz"]
    if tz:
        text += "+00:00" if tz in ("Z", "z") else tz
    try:
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise InvalidRequestError(f"invalid timestamp: {value!r}") from exc


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _format_time(value)
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if isinstance(value, Mapping):
        return {str(key): _encode(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(item) for item in value]
    return value


def _mapping(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise InvalidRequestError(f"{what} must be an object, got {type(data).__name__}")
    return data


def _optional_mapping(data: Any, what: str) -> dict[str, Any] | None:
    if data is None:
        return None
    return dict(_mapping(data, what))


def _job_status(value: Any) -> JobStatus:
    if value is None or value == "":
        return JobStatus.PENDING
    try:
        return JobStatus(value)
    except ValueError as exc:
        raise InvalidRequestError(f"unknown job status: {value!r}") from exc


@dataclass
class JobProgress:
    """Progress of a running job."""

    files_processed: int = 0
    total_files: int = 0
    current_path: str = ""

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"files_processed": self.files_processed}
        if self.total_files:
            result["total_files"] = self.total_files
        if self.current_path:
            result["current_path"] = self.current_path
        return result

    @classmethod
    def from_dict(cls, data: Any) -> JobProgress:
        data = _mapping(data, "job progress")
        return cls(
            files_processed=int(data.get("files_processed") or 0),
            total_files=int(data.get("total_files") or 0),
            current_path=str(data.get("current_path") or ""),
        )


@dataclass
class Job:
    """A scan job held by the daemon's queue."""

    id: str
    path: str
    options: dict[str, Any] | None = None
    status: JobStatus = JobStatus.PENDING
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    stats: dict[str, Any] | None = None
    error: str = ""
    progress: JobProgress | None = None

    def is_terminal(self) -> bool:
        """True once the job has completed, failed or been cancelled."""
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    def duration(self) -> timedelta:
        """Run time so far, or total run time once completed."""
        if self.started_at is None:
            return timedelta(0)
        end = self.completed_at
        if end is None:
            end = datetime.now() if self.started_at.tzinfo is None else _now()
        return end - self.started_at

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "path": self.path,
            "options": _encode(self.options),
            "status": self.status.value,
            "created_at": _format_time(self.created_at),
        }
        if self.started_at is not None:
            result["started_at"] = _format_time(self.started_at)
        if self.completed_at is not None:
            result["completed_at"] = _format_time(self.completed_at)
        if self.stats is not None:
            result["stats"] = _encode(self.stats)
        if self.error:
            result["error"] = self.error
        if self.progress is not None:
            result["progress"] = self.progress.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Any) -> Job:
        data = _mapping(data, "job")
        progress = data.get("progress")
        return cls(
            id=str(data.get("id") or ""),
            path=str(data.get("path") or ""),
            options=_optional_mapping(data.get("options"), "job options"),
            status=_job_status(data.get("status")),
            created_at=_parse_time(data.get("created_at")),
            started_at=_parse_time(data.get("started_at")),
            completed_at=_parse_time(data.get("completed_at")),
            stats=_optional_mapping(data.get("stats"), "job stats"),
            error=str(data.get("error") or ""),
            progress=None if progress is None else JobProgress.from_dict(progress),
        )


@dataclass
class ScanRequest:
    """A request to scan a directory."""

    path: str
    options: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "options": _encode(self.options)}

    @classmethod
    def from_dict(cls, data: Any) -> ScanRequest:
        data = _mapping(data, "scan request")
        return cls(
            path=str(data.get("path") or ""),
            options=_optional_mapping(data.get("options"), "scan options"),
        )


@dataclass
class DaemonStatus:
    """Snapshot of the daemon's state."""

    running: bool = False
    pid: int = 0
    started_at: datetime | None = None
    active_jobs: int = 0
    queued_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    workers: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "pid": self.pid,
            "started_at": _format_time(self.started_at),
            "active_jobs": self.active_jobs,
            "queued_jobs": self.queued_jobs,
            "completed_jobs": self.completed_jobs,
            "failed_jobs": self.failed_jobs,
            "workers": self.workers,
        }

    @classmethod
    def from_dict(cls, data: Any) -> DaemonStatus:
        data = _mapping(data, "daemon status")
        return cls(
            running=bool(data.get("running", False)),
            pid=int(data.get("pid") or 0),
            started_at=_parse_time(data.get("started_at")),
            active_jobs=int(data.get("active_jobs") or 0),
            queued_jobs=int(data.get("queued_jobs") or 0),
            completed_jobs=int(data.get("completed_jobs") or 0),
            failed_jobs=int(data.get("failed_jobs") or 0),
            workers=int(data.get("workers") or 0),
        )


@dataclass
class Request:
    """Body of a request message; unknown types are kept as plain strings."""

    type: RequestType | str
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"type": str(self.type)}
        if self.data is not None:
            result["data"] = _encode(self.data)
        return result

    @classmethod
    def from_dict(cls, data: Any) -> Request:
        data = _mapping(data, "request")
        raw_type = str(data.get("type") or "")
        try:
            request_type: RequestType | str = RequestType(raw_type)
        except ValueError:
            request_type = raw_type
        return cls(type=request_type, data=data.get("data"))


@dataclass
class Response:
    """Body of a response message."""

    success: bool = False
    data: Any = None
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            result["data"] = _encode(self.data)
        if self.error:
            result["error"] = self.error
        return result

    @classmethod
    def from_dict(cls, data: Any) -> Response:
        data = _mapping(data, "response")
        return cls(
            success=bool(data.get("success", False)),
            data=data.get("data"),
            error=str(data.get("error") or ""),
        )


@dataclass
class Message:
    """One envelope of the daemon's line-delimited JSON protocol."""

    type: MessageType
    id: str = ""
    timestamp: datetime | None = None
    request: Request | None = None
    response: Response | None = None

    def __post_init__(self) -> None:
        if self.timestamp is None:
            self.timestamp = _now()

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "type": self.type.value,
            "id": self.id,
            "timestamp": _format_time(self.timestamp),
        }
        if self.request is not None:
            result["request"] = self.request.to_dict()
        if self.response is not None:
            result["response"] = self.response.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Any) -> Message:
        data = _mapping(data, "message")
        try:
            message_type = MessageType(data.get("type"))
        except ValueError as exc:
            raise InvalidRequestError(f"unknown message type: {data.get('type')!r}") from exc
        request = data.get("request")
        response = data.get("response")
        return cls(
            type=message_type,
            id=str(data.get("id") or ""),
            timestamp=_parse_time(data.get("timestamp")),
            request=None if request is None else Request.from_dict(request),
            response=None if response is None else Response.from_dict(response),
        )


@dataclass
class DaemonConfig:
    """Daemon settings; relative paths live under the user's state directory."""

    socket_path: str = DEFAULT_SOCKET_PATH
    pid_path: str = DEFAULT_PID_PATH
    max_workers: int = DEFAULT_MAX_WORKERS
    queue_size: int = DEFAULT_QUEUE_SIZE
    log_level: str = DEFAULT_LOG_LEVEL

    def to_dict(self) -> dict[str, Any]:
        return {
            "socket_path": self.socket_path,
            "pid_path": self.pid_path,
            "max_workers": self.max_workers,
            "queue_size": self.queue_size,
            "log_level": self.log_level,
        }

    @classmethod
    def from_dict(cls, data: Any) -> DaemonConfig:
        data = _mapping(data, "daemon config")
        defaults = cls()
        return cls(
            socket_path=str(data.get("socket_path", defaults.socket_path)),
            pid_path=str(data.get("pid_path", defaults.pid_path)),
            max_workers=int(data.get("max_workers", defaults.max_workers)),
            queue_size=int(data.get("queue_size", defaults.queue_size)),
            log_level=str(data.get("log_level", defaults.log_level)),
        )


def default_config() -> DaemonConfig:
    """Configuration with absolute paths inside ~/.fman."""
    try:
        home = Path.home()
    except RuntimeError:
        home = Path("")
    state_dir = home / STATE_DIR_NAME
    return DaemonConfig(
        socket_path=str(state_dir / DEFAULT_SOCKET_PATH),
        pid_path=str(state_dir / DEFAULT_PID_PATH),
        max_workers=DEFAULT_MAX_WORKERS,
        queue_size=DEFAULT_QUEUE_SIZE,
        log_level=DEFAULT_LOG_LEVEL,
    )


def generate_job_id() -> str:
    """Random job identifier shaped like a UUID with a "job_" prefix."""
    try:
        raw = os.urandom(16)
    except NotImplementedError:
        return f"job_{time.time_ns()}_{os.getpid()}"
    h = raw.hex()
    return f"job_{h[0:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"


def new_job(path: str, options: dict[str, Any] | None) -> Job:
    """A fresh pending job for ``path``."""
    return Job(
        id=generate_job_id(),
        path=path,
        options=options,
        status=JobStatus.PENDING,
        created_at=_now(),
    )


def is_process_running(pid_path: str | os.PathLike[str]) -> bool:
    """True if the PID file names a live process that this user may signal."""
    try:
        text = Path(pid_path).read_text()
    except OSError:
        return False
    if not re.fullmatch(r"[+-]?\d+", text):
        return False
    pid = int(text)
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except (OSError, OverflowError):
        return False
    return True
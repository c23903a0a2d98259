"""Audit logging for rule changes.

Provides:
- JSON-lines audit log, one event per line
- Appends serialized with file locking
- Size-based rotation
- Session correlation
"""

import fcntl
import json
import os
import pwd
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Generator, Optional

from proxyctl.core.config import DEFAULT_AUDIT_LOG
from proxyctl.core.output import console


DEFAULT_MAX_SIZE_MB = 20
DEFAULT_BACKUP_COUNT = 5


class AuditEventType(Enum):
    """Types of auditable events."""
    PROXY_ADD = "proxy.add"
    PROXY_REMOVE = "proxy.remove"
    PROXY_FIXADDR = "proxy.fixaddr"
    RULES_INIT = "rules.init"


class AuditResult(Enum):
    """Result of an audited operation."""
    SUCCESS = "success"
    FAILURE = "failure"
    DRY_RUN = "dry_run"


def _actor_username() -> str:
    try:
        return pwd.getpwuid(os.getuid()).pw_name
    except KeyError:
        return str(os.getuid())


@dataclass
class AuditEvent:
    """Represents a single audit event."""
    event_type: AuditEventType
    result: AuditResult
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    actor_uid: int = field(default_factory=os.getuid)
    actor_username: str = field(default_factory=_actor_username)
    actor_sudo_user: Optional[str] = field(default_factory=lambda: os.environ.get("SUDO_USER"))

    # Proxy port, or "*" for table-wide operations
    target: Optional[str] = None
    parameters: dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None
    error: Optional[str] = None

    session_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_type": self.event_type.value,
            "result": self.result.value,
            "timestamp": self.timestamp.isoformat(),
            "actor": {
                "uid": self.actor_uid,
                "username": self.actor_username,
                "sudo_user": self.actor_sudo_user,
            },
            "target": self.target,
            "parameters": self.parameters,
            "message": self.message,
            "error": self.error,
            "session_id": self.session_id,
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)


class AuditLogger:
    """Append-only audit log.

    Write failures are reported at debug level and never fail the
    operation being audited.
    """

    def __init__(
        self,
        log_path: Optional[Path] = None,
        max_size_mb: int = DEFAULT_MAX_SIZE_MB,
        backup_count: int = DEFAULT_BACKUP_COUNT,
        enabled: bool = True,
    ) -> None:
        self.log_path = log_path or DEFAULT_AUDIT_LOG
        self.max_size_bytes = max_size_mb * 1024 * 1024
        self.backup_count = backup_count
        self.enabled = enabled
        self.session_id = str(uuid.uuid4())

    def _ensure_log_directory(self) -> bool:
        try:
            self.log_path.parent.mkdir(mode=0o750, parents=True, exist_ok=True)
            return True
        except OSError as e:
            console.debug(f"Cannot create audit log directory: {e}")
            return False

    def log(self, event: AuditEvent) -> None:
        """Log an audit event."""
        if not self.enabled:
            return

        event.session_id = self.session_id
        log_line = event.to_json() + "\n"

        if not self._ensure_log_directory():
            return

        try:
            with self._atomic_append() as f:
                f.write(log_line)
        except OSError as e:
            console.debug(f"Failed to write audit log: {e}")
            return

        self._rotate_if_needed()

    @contextmanager
    def _atomic_append(self) -> Generator:
        """Context manager for append under an exclusive file lock."""
        fd = os.open(
            self.log_path,
            os.O_WRONLY | os.O_APPEND | os.O_CREAT,
            0o640,
        )
        with os.fdopen(fd, "a") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            yield f
            f.flush()
            os.fsync(f.fileno())

    def _rotate_if_needed(self) -> None:
        try:
            if self.log_path.stat().st_size > self.max_size_bytes:
                self._rotate_logs()
        except OSError as e:
            console.debug(f"Audit log rotation failed: {e}")

    def _rotate_logs(self) -> None:
        oldest = self.log_path.with_suffix(f".{self.backup_count}")
        if oldest.exists():
            oldest.unlink()

        for i in range(self.backup_count - 1, 0, -1):
            src = self.log_path.with_suffix(f".{i}")
            dst = self.log_path.with_suffix(f".{i + 1}")
            if src.exists():
                src.rename(dst)

        self.log_path.rename(self.log_path.with_suffix(".1"))

    def log_operation(
        self,
        event_type: AuditEventType,
        result: AuditResult,
        target: str,
        parameters: Optional[dict[str, Any]] = None,
        message: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Log an operation with common fields."""
        self.log(AuditEvent(
            event_type=event_type,
            result=result,
            target=target,
            parameters=parameters or {},
            message=message,
            error=error,
        ))


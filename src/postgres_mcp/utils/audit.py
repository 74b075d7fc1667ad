"""Structured audit logging for authorization and session events.

Writes one JSON object per line to a file and/or stdout. Entries never
contain passwords, tokens or authorization codes.
"""

import ipaddress
import json
import logging
import os
import sys
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional, TextIO

logger = logging.getLogger("postgres-mcp.utils.audit")


class AuditAction(str, Enum):
    """Types of actions that can be audited."""

    # OAuth actions
    CLIENT_REGISTERED = "client_registered"
    AUTHENTICATION_SUCCESS = "authentication_success"
    AUTHENTICATION_FAILURE = "authentication_failure"
    RATE_LIMITED = "rate_limited"
    TOKEN_ISSUED = "token_issued"

    # Session actions
    SESSION_CREATED = "session_created"
    SESSION_TERMINATED = "session_terminated"

    # System actions
    SERVER_STARTED = "server_started"
    SERVER_STOPPED = "server_stopped"


class AuditResult(str, Enum):
    """Result of an audited action."""

    SUCCESS = "success"
    FAILURE = "failure"
    DENIED = "denied"
    ERROR = "error"


@dataclass
class AuditLogEntry:
    """Single audit record."""

    timestamp: str  # ISO 8601 with timezone
    action: str
    result: str = AuditResult.SUCCESS.value
    action_category: Optional[str] = None
    user_ip: Optional[str] = None
    client_id: Optional[str] = None
    session_id: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert audit log entry to dictionary, excluding None values."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


class AuditLogger:
    """JSON-lines audit logger."""

    def __init__(
        self,
        enabled: bool = True,
        output_file: Optional[str] = None,
        output_stdout: bool = False,
        mask_ip: bool = False,
    ):
        """Initialize audit logger.

        Args:
            enabled: Whether audit logging is enabled
            output_file: Path to audit log file (optional)
            output_stdout: Whether to output to stdout
            mask_ip: Whether to mask the host part of caller addresses
        """
        self.enabled = enabled
        self.output_file = output_file
        self.output_stdout = output_stdout
        self.mask_ip = mask_ip

        self.file_handler: Optional[TextIO] = None
        if self.enabled and self.output_file:
            try:
                log_path = Path(self.output_file)
                log_path.parent.mkdir(parents=True, exist_ok=True)
                self.file_handler = open(log_path, "a", encoding="utf-8")
            except OSError as e:
                logger.error(f"Failed to open audit log file {self.output_file}: {e}")

        if not self.enabled:
            logger.debug("Audit logging is disabled")

    def _mask_ip_value(self, value: Optional[str]) -> Optional[str]:
        """Mask the last IPv4 octet or the IPv6 interface identifier."""
        if not self.mask_ip or not value:
            return value
        try:
            address = ipaddress.ip_address(value)
        except ValueError:
            return value
        if address.version == 4:
            return value.rsplit(".", 1)[0] + ".*"
        network = ipaddress.ip_network(f"{address}/64", strict=False)
        return f"{network.network_address}/64"

    def _write_entry(self, entry: AuditLogEntry) -> None:
        if not self.enabled:
            return

        entry.user_ip = self._mask_ip_value(entry.user_ip)
        json_entry = entry.to_json()

        if self.file_handler:
            try:
                self.file_handler.write(json_entry + "\n")
                self.file_handler.flush()
            except OSError as e:
                logger.error(f"Failed to write audit log entry to file: {e}")

        if self.output_stdout:
            print(json_entry, file=sys.stdout, flush=True)

    def log(
        self,
        action: AuditAction,
        result: AuditResult = AuditResult.SUCCESS,
        user_ip: Optional[str] = None,
        client_id: Optional[str] = None,
        session_id: Optional[str] = None,
        error_message: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Log an audit event.

        Args:
            action: Type of action being audited
            result: Result of the action
            user_ip: Caller address
            client_id: OAuth client ID
            session_id: MCP session identifier
            error_message: Sanitized error message if failure
            metadata: Additional structured metadata
        """
        if action.value.startswith("session"):
            action_category = "session"
        elif action.value.startswith("server"):
            action_category = "system"
        else:
            action_category = "authentication"

        entry = AuditLogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            action=action.value,
            result=result.value,
            action_category=action_category,
            user_ip=user_ip,
            client_id=client_id,
            session_id=session_id,
            error_message=error_message,
            metadata=metadata,
        )
        self._write_entry(entry)

    def close(self) -> None:
        """Close audit logger and cleanup resources."""
        if self.file_handler:
            try:
                self.file_handler.close()
            except OSError as e:
                logger.error(f"Error closing audit log file: {e}")
            self.file_handler = None

    @classmethod
    def from_env(cls) -> "AuditLogger":
        """Create audit logger from environment variables.

        Environment variables:
        - AUDIT_LOG_ENABLED: Enable audit logging (default: true)
        - AUDIT_LOG_FILE: Path to audit log file (optional)
        - AUDIT_LOG_STDOUT: Output to stdout (default: false)
        - AUDIT_LOG_MASK_IP: Mask caller addresses (default: false)

        Returns:
            Configured AuditLogger instance
        """
        enabled = os.getenv("AUDIT_LOG_ENABLED", "true").lower() in ("true", "1", "yes")
        output_file = os.getenv("AUDIT_LOG_FILE")
        output_stdout = os.getenv("AUDIT_LOG_STDOUT", "false").lower() in ("true", "1", "yes")
        mask_ip = os.getenv("AUDIT_LOG_MASK_IP", "false").lower() in ("true", "1", "yes")

        return cls(
            enabled=enabled,
            output_file=output_file,
            output_stdout=output_stdout,
            mask_ip=mask_ip,
        )

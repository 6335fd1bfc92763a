"""Structured logging for inboxkeeper."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class StructuredLogger:
    """Structured logger for audit trail."""

    def __init__(self, log_file: str | None = None):
        """Initialize structured logger.

        Args:
            log_file: Path to JSON log file for audit trail
        """
        self.log_file = Path(log_file) if log_file else None

    def log_event(self, event_type: str, data: dict[str, Any]) -> None:
        """Log a structured event.

        Args:
            event_type: Type of event (e.g., 'sync_completed', 'fallback_used')
            data: Event data
        """
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            **data,
        }

        if self.log_file:
            try:
                with open(self.log_file, "a", encoding="utf-8") as f:
                    f.write(json.dumps(event, default=str) + "\n")
            except OSError as e:
                logger.error(f"Failed to write to audit log: {e}")

    def log_sync(
        self,
        account: str,
        kind: str,
        changed: int,
        total: int,
        checkpoint: str | None = None,
    ) -> None:
        """Log a completed sync.

        Args:
            account: Account email address
            kind: "delta" or "full"
            changed: Number of records added, changed or removed
            total: Collection size after the merge
            checkpoint: New delta checkpoint, if any
        """
        self.log_event(
            "sync_completed",
            {
                "account": self._sanitize_for_json(account),
                "kind": kind,
                "changed": changed,
                "total": total,
                "checkpoint": checkpoint,
            },
        )

    def log_sync_skipped(self, account: str, reason: str) -> None:
        """Log a sync that was dropped."""
        self.log_event(
            "sync_skipped",
            {"account": self._sanitize_for_json(account), "reason": reason},
        )

    def log_fallback(self, task: str, message_id: str | None, reason: str) -> None:
        """Log use of the heuristic classifier in place of the model.

        Args:
            task: Gateway task (priority, sentiment, ...)
            message_id: Provider message id of the email analyzed
            reason: Why the model could not answer
        """
        self.log_event(
            "fallback_used",
            {
                "task": task,
                "message_id": self._sanitize_for_json(message_id) if message_id else None,
                "reason": self._sanitize_for_json(reason),
            },
        )

    def log_error(self, error_type: str, message: str, details: dict[str, Any] | None = None) -> None:
        """Log error event.

        Args:
            error_type: Type of error
            message: Error message
            details: Additional error details
        """
        self.log_event(
            "error",
            {
                "error_type": error_type,
                "message": self._sanitize_for_json(message),
                "details": details or {},
            },
        )

    def log_startup(self, config: dict[str, Any]) -> None:
        """Log application startup.

        Args:
            config: Sanitized configuration
        """
        self.log_event("startup", config)

    def log_shutdown(self, reason: str = "normal") -> None:
        """Log application shutdown.

        Args:
            reason: Shutdown reason
        """
        self.log_event("shutdown", {"reason": reason})

    def _sanitize_for_json(self, value: str) -> str:
        """Strip control characters and cap length."""
        sanitized = "".join(c for c in value if c.isprintable() or c in [" ", "\t"])
        if len(sanitized) > 500:
            sanitized = sanitized[:497] + "..."
        return sanitized

"""
Per-run structured logging correlated by run identifier.
"""

from __future__ import annotations

import json
import logging
import secrets
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

PACKAGE_LOGGER = "wholesome_library"
RUN_LOGGER = f"{PACKAGE_LOGGER}.run"


def generate_run_id(now: datetime | None = None) -> str:
    """Return an identifier such as ``run_20261019T101500_a1b2c3``."""
    moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return f"run_{moment.strftime('%Y%m%dT%H%M%S')}_{secrets.token_hex(3)}"


@dataclass(frozen=True)
class LogEntry:
    timestamp: str
    level: str
    run_id: str
    stage: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": self.timestamp,
            "level": self.level,
            "run_id": self.run_id,
            "stage": self.stage,
            "message": self.message,
        }
        if self.data:
            payload["data"] = self.data
        return payload


class RunLogger:
    """
    Logger object constructed once per run and handed to every stage call.

    Each record is forwarded to the standard ``logging`` hierarchy with ``run_id``,
    ``stage`` and ``data`` attached, kept in :attr:`entries`, and optionally appended
    as a JSON line to ``<log_dir>/<run_id>.log``. Raw stage outputs are stored as
    artifacts and referenced by string, so run records never carry full payloads.
    """

    def __init__(
        self,
        run_id: str | None = None,
        *,
        log_dir: str | Path | None = None,
        artifact_dir: str | Path | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.run_id = run_id or generate_run_id()
        self._logger = logger or logging.getLogger(RUN_LOGGER)
        self._entries: list[LogEntry] = []
        self._artifacts: dict[str, Any] = {}

        self._log_path: Path | None = None
        if log_dir is not None:
            directory = Path(log_dir).expanduser()
            directory.mkdir(parents=True, exist_ok=True)
            self._log_path = directory / f"{self.run_id}.log"

        self._artifact_dir: Path | None = None
        if artifact_dir is not None:
            self._artifact_dir = Path(artifact_dir).expanduser() / self.run_id
            self._artifact_dir.mkdir(parents=True, exist_ok=True)

    @property
    def entries(self) -> list[LogEntry]:
        return list(self._entries)

    @property
    def log_path(self) -> Path | None:
        return self._log_path

    def debug(self, stage: str, message: str, **data: Any) -> None:
        self._emit(logging.DEBUG, stage, message, data)

    def info(self, stage: str, message: str, **data: Any) -> None:
        self._emit(logging.INFO, stage, message, data)

    def warning(self, stage: str, message: str, **data: Any) -> None:
        self._emit(logging.WARNING, stage, message, data)

    def error(self, stage: str, message: str, **data: Any) -> None:
        self._emit(logging.ERROR, stage, message, data)

    def transition(self, previous: str, current: str, **data: Any) -> None:
        """Record a state machine transition."""
        self._emit(logging.INFO, current, f"{previous} -> {current}", data)

    def record_artifact(self, stage: str, payload: Any) -> str:
        """
        Keep the raw output of ``stage`` and return a reference to it.

        With an artifact directory the payload is written to ``<dir>/<run_id>/<stage>.json``
        and the path is returned; otherwise it stays in memory under ``run://<run_id>/<stage>``.
        """
        if self._artifact_dir is not None:
            path = self._artifact_dir / f"{stage}.json"
            path.write_text(
                json.dumps(payload, ensure_ascii=False, indent=2, default=str),
                encoding="utf-8",
            )
            reference = str(path)
        else:
            reference = f"run://{self.run_id}/{stage}"
        self._artifacts[reference] = payload
        return reference

    def artifact(self, reference: str) -> Any:
        return self._artifacts[reference]

    def _emit(self, level: int, stage: str, message: str, data: dict[str, Any]) -> None:
        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=logging.getLevelName(level),
            run_id=self.run_id,
            stage=stage,
            message=message,
            data=dict(data),
        )
        self._entries.append(entry)
        self._logger.log(
            level,
            "[%s] %s",
            stage,
            message,
            extra={"run_id": self.run_id, "stage": stage, "data": entry.data},
        )
        if self._log_path is not None:
            with self._log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.as_dict(), ensure_ascii=False, default=str) + "\n")


class JsonFormatter(logging.Formatter):
    """One JSON object per record, including run correlation fields when present."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in ("run_id", "stage", "data"):
            value = getattr(record, key, None)
            if value:
                payload[key] = value
        if record.exc_info and record.exc_info[1] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable single line format for terminals."""

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
            f"[{record.levelname:8s}]",
            record.name,
        ]
        run_id = getattr(record, "run_id", None)
        if run_id:
            parts.append(f"<{run_id}>")
        parts.append(record.getMessage())
        data = getattr(record, "data", None)
        if data:
            parts.append(json.dumps(data, default=str, ensure_ascii=False))
        line = " ".join(parts)
        if record.exc_info and record.exc_info[1] is not None:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(level: str = "INFO", log_format: str = "text") -> logging.Logger:
    """
    Install a single stderr handler on the package logger.
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    package_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter() if log_format == "json" else TextFormatter())
    package_logger.addHandler(handler)
    package_logger.propagate = False
    return package_logger

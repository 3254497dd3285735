"""Observability utilities: contextual logging and in-process metrics."""

import logging
import threading
import uuid
from collections import deque
from typing import Any, Deque, Dict, List, Optional
from dataclasses import dataclass, field
from enum import Enum

from .logging_config import get_logger


class LogLevel(Enum):
    """Log levels for structured logging."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class LogContext:
    """Context information carried through a unit of work."""

    correlation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    operation: str = ""
    component: str = ""
    actor_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def with_operation(self, operation: str) -> "LogContext":
        """Create new context with operation set."""
        return LogContext(
            correlation_id=self.correlation_id,
            operation=operation,
            component=self.component,
            actor_id=self.actor_id,
            metadata=self.metadata.copy(),
        )

    def with_metadata(self, **kwargs: Any) -> "LogContext":
        """Create new context with additional metadata."""
        new_metadata = self.metadata.copy()
        new_metadata.update(kwargs)
        return LogContext(
            correlation_id=self.correlation_id,
            operation=self.operation,
            component=self.component,
            actor_id=self.actor_id,
            metadata=new_metadata,
        )


class StructuredLogger:
    """Logger that renders a LogContext into every line."""

    def __init__(self, name: str, level: Optional[int] = None):
        self._logger = get_logger(name)
        if level is not None:
            self._logger.setLevel(level)

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(
        self,
        level: LogLevel,
        message: str,
        context: Optional[LogContext] = None,
        **kwargs: Any,
    ) -> None:
        if context:
            formatted_message = f"[{context.correlation_id}] {message}"
            if context.operation:
                formatted_message = f"[{context.operation}] {formatted_message}"
            extras = dict(context.metadata)
            if context.actor_id:
                extras["actor_id"] = context.actor_id
            extras.update(kwargs)
        else:
            formatted_message = message
            extras = kwargs

        if extras:
            metadata_str = ", ".join(f"{k}={v}" for k, v in extras.items())
            formatted_message = f"{formatted_message} ({metadata_str})"

        self._logger.log(getattr(logging, level.value), formatted_message)

    def debug(self, message: str, context: Optional[LogContext] = None, **kwargs: Any) -> None:
        """Log debug message."""
        self._log(LogLevel.DEBUG, message, context, **kwargs)

    def info(self, message: str, context: Optional[LogContext] = None, **kwargs: Any) -> None:
        """Log info message."""
        self._log(LogLevel.INFO, message, context, **kwargs)

    def warning(self, message: str, context: Optional[LogContext] = None, **kwargs: Any) -> None:
        """Log warning message."""
        self._log(LogLevel.WARNING, message, context, **kwargs)

    def error(self, message: str, context: Optional[LogContext] = None, **kwargs: Any) -> None:
        """Log error message."""
        self._log(LogLevel.ERROR, message, context, **kwargs)


@dataclass
class PerformanceMetrics:
    """Outcome and timing of a single operation attempt."""

    operation: str
    start_time: float
    end_time: float
    outcome: str
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.outcome == "success"

    @property
    def duration(self) -> float:
        """Operation duration in seconds."""
        return self.end_time - self.start_time

    @property
    def duration_ms(self) -> float:
        """Operation duration in milliseconds."""
        return self.duration * 1000


@dataclass
class OperationStats:
    """Running totals for one operation name."""

    total: int = 0
    total_duration: float = 0.0
    max_duration: float = 0.0
    outcomes: Dict[str, int] = field(default_factory=dict)

    def add(self, metric: PerformanceMetrics) -> None:
        self.total += 1
        self.total_duration += metric.duration
        self.max_duration = max(self.max_duration, metric.duration)
        self.outcomes[metric.outcome] = self.outcomes.get(metric.outcome, 0) + 1

    def merge(self, other: "OperationStats") -> None:
        self.total += other.total
        self.total_duration += other.total_duration
        self.max_duration = max(self.max_duration, other.max_duration)
        for outcome, count in other.outcomes.items():
            self.outcomes[outcome] = self.outcomes.get(outcome, 0) + count


class MetricsCollector:
    """
    Thread-safe collector for performance metrics.

    Summaries come from running totals per operation, so they cover every
    recorded attempt. Raw records are kept only for the most recent
    ``history_size`` attempts.
    """

    def __init__(self, history_size: int = 1000) -> None:
        if history_size <= 0:
            raise ValueError("history_size must be positive")
        self._metrics: Deque[PerformanceMetrics] = deque(maxlen=history_size)
        self._stats: Dict[str, OperationStats] = {}
        self._lock = threading.Lock()

    def record_metric(self, metric: PerformanceMetrics) -> None:
        with self._lock:
            self._metrics.append(metric)
            self._stats.setdefault(metric.operation, OperationStats()).add(metric)

    def get_metrics(self, operation: Optional[str] = None) -> List[PerformanceMetrics]:
        """Get the recent metrics window, optionally filtered by operation."""
        with self._lock:
            if operation:
                return [m for m in self._metrics if m.operation == operation]
            return list(self._metrics)

    def get_summary(self, operation: Optional[str] = None) -> Dict[str, Any]:
        """Summary statistics, with a count per outcome."""
        stats = OperationStats()
        with self._lock:
            for name, operation_stats in self._stats.items():
                if operation is None or name == operation:
                    stats.merge(operation_stats)

        if not stats.total:
            return {}

        successful = stats.outcomes.get("success", 0)
        return {
            "total_operations": stats.total,
            "successful_operations": successful,
            "failed_operations": stats.total - successful,
            "outcomes": stats.outcomes,
            "success_rate": successful / stats.total,
            "avg_duration": stats.total_duration / stats.total,
            "max_duration": stats.max_duration,
        }

    def clear_metrics(self) -> None:
        with self._lock:
            self._metrics.clear()
            self._stats.clear()

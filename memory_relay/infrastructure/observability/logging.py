import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "memory-relay"
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    # Processors for structlog
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    # Add appropriate renderer based on format
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Set service name in context
    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add service context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    return event_dict


class RelayLogger:
    """Specialized logger for memory relay operations"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_memory_event(
        self,
        event_type: str,
        conversation_id: str,
        data: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        """Log changes to a conversation's long-term memory"""

        self.logger.info(
            "memory_event",
            event_type=event_type,
            conversation_id=conversation_id,
            data=data or {},
            **kwargs
        )

    def log_state_transition(
        self,
        conversation_id: str,
        from_state: str,
        to_state: str,
        trigger: Optional[str] = None
    ):
        """Log confirmation state machine transitions"""

        self.logger.info(
            "state_transition",
            conversation_id=conversation_id,
            from_state=from_state,
            to_state=to_state,
            trigger=trigger
        )

    def log_upstream_attempt(
        self,
        attempt: int,
        max_attempts: int,
        stream: bool,
        success: bool = True,
        status_code: Optional[int] = None,
        error: Optional[str] = None
    ):
        """Log upstream connection attempts"""

        level = self.logger.info if success else self.logger.warning
        level(
            "upstream_attempt",
            attempt=attempt,
            max_attempts=max_attempts,
            stream=stream,
            success=success,
            status_code=status_code,
            error=error
        )


# Global logger instance
relay_logger = RelayLogger("memory_relay")


class MetricsCollector:
    """In-process counters and latency aggregates, reported through the log"""

    def __init__(self):
        self.counters: Dict[str, int] = {}
        self.latencies: Dict[str, Dict[str, float]] = {}

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        stats = self.latencies.setdefault(operation, {"count": 0, "sum": 0.0, "min": duration_ms, "max": duration_ms})
        stats["count"] += 1
        stats["sum"] += duration_ms
        stats["min"] = min(stats["min"], duration_ms)
        stats["max"] = max(stats["max"], duration_ms)

        relay_logger.logger.debug(
            "metric",
            metric_type="latency",
            operation=operation,
            duration_ms=round(duration_ms, 2),
            tags=tags or {}
        )

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        self.counters[name] = self.counters.get(name, 0) + value

        relay_logger.logger.debug(
            "metric",
            metric_type="counter",
            name=name,
            value=value,
            tags=tags or {}
        )

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Counters plus count/avg/min/max per timed operation"""

        summary: Dict[str, Any] = dict(self.counters)
        for operation, stats in self.latencies.items():
            summary[f"latency.{operation}"] = {
                "count": stats["count"],
                "avg": round(stats["sum"] / stats["count"], 2),
                "min": round(stats["min"], 2),
                "max": round(stats["max"], 2),
            }
        return summary


# Global metrics collector
metrics = MetricsCollector()

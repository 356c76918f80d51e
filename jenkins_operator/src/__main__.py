from __future__ import annotations

import json
import logging
import os
import queue
import re
import signal
import threading

from jenkins_operator.src.config import load_config
from jenkins_operator.src.controller import build_controller
from jenkins_operator.src.health import start_health_server
from jenkins_operator.src.kube import EventRecorder, build_clients, load_kube_configuration
from jenkins_operator.src.metrics import METRICS
from jenkins_operator.src.models import NotificationEvent
from jenkins_operator.src.notifications import NotificationDispatcher, build_provider_factory

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key|crumb)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)(https?://)([^/\s:@]+):([^/\s@]+)@"),
        r"\1\2:[REDACTED]@",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str | None = None) -> None:
    log_level = (level_name or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> None:
    """Operator entrypoint: configure logging, start notifications and health, run the controller."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    config = load_config()
    load_kube_configuration()
    clients = build_clients()

    notifications: queue.Queue[NotificationEvent] = queue.Queue()
    dispatcher = NotificationDispatcher(
        recorder=EventRecorder(clients.core),
        provider_factory=build_provider_factory(clients.core),
    )
    controller = build_controller(clients, config, notifications)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    listener = threading.Thread(
        target=dispatcher.listen,
        args=(notifications, shutdown_event),
        name="notifications",
        daemon=True,
    )
    listener.start()

    health_server = start_health_server(
        ready=controller.ready,
        port=config.health_port,
        listener=dispatcher.alive,
    )

    try:
        controller.run_forever(shutdown_event=shutdown_event)
    finally:
        shutdown_event.set()
        listener.join(timeout=5)
        health_server.shutdown()
    logging.getLogger(__name__).info("Operator stopped")


if __name__ == "__main__":
    main()

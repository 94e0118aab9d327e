"""
Logging configuration with optional Grafana Loki shipping.

Console logging is always enabled: human-readable in development, JSON elsewhere.
When LOKI_ENABLED is set, records are also pushed to Loki from a background
thread so request handlers never block on log delivery.
"""

import atexit
import json
import logging
import queue
import sys
import threading

import httpx

from smokefree.config.config import Config

logger = logging.getLogger(__name__)

# Record attributes promoted to Loki labels when present
_LABEL_ATTRIBUTES = ("user_id", "trigger", "event_type")


class LokiLogHandler(logging.Handler):
    """
    Log handler that queues records and pushes them to Loki asynchronously.

    Records are dropped when the queue is full; log shipping is best-effort.
    """

    def __init__(self, loki_url: str, tags: dict[str, str], max_queue_size: int = 10000):
        super().__init__()
        self.loki_url = loki_url
        self.tags = tags
        self._client: httpx.Client | None = None
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._shutdown = threading.Event()
        self._worker_thread = threading.Thread(target=self._worker, daemon=True)
        self._worker_thread.start()
        atexit.register(self.close)

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=httpx.Timeout(5.0, connect=2.0),
                limits=httpx.Limits(max_connections=5, max_keepalive_connections=2),
            )
        return self._client

    def _worker(self) -> None:
        while True:
            try:
                payload = self._queue.get(timeout=0.5)
            except queue.Empty:
                if self._shutdown.is_set():
                    break
                continue

            try:
                response = self._get_client().post(self.loki_url, json=payload)
                response.raise_for_status()
            except httpx.HTTPError:
                # Loki outages must not affect the application
                pass
            finally:
                self._queue.task_done()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            labels = {**self.tags, "level": record.levelname, "logger": record.name}
            for attr in _LABEL_ATTRIBUTES:
                value = getattr(record, attr, None)
                if value is not None:
                    labels[attr] = str(value)
            if record.exc_info and record.exc_info[0]:
                labels["error_type"] = record.exc_info[0].__name__

            timestamp_ns = str(int(record.created * 1_000_000_000))
            payload = {
                "streams": [{"stream": labels, "values": [[timestamp_ns, self.format(record)]]}]
            }
            self._queue.put_nowait(payload)
        except queue.Full:
            pass
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self._shutdown.set()
        if self._worker_thread.is_alive():
            self._worker_thread.join(timeout=5.0)
        if self._client is not None and not self._worker_thread.is_alive():
            self._client.close()
            self._client = None
        super().close()


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for attr in _LABEL_ATTRIBUTES:
            if hasattr(record, attr):
                log_data[attr] = getattr(record, attr)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging() -> bool:
    """
    Configure application logging.

    Returns:
        bool: True if Loki integration was enabled, False otherwise
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    if Config.IS_DEVELOPMENT or Config.IS_TESTING:
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    else:
        console_handler.setFormatter(StructuredFormatter())
    root_logger.addHandler(console_handler)

    loki_enabled = False
    if Config.LOKI_ENABLED:
        try:
            loki_handler = LokiLogHandler(
                loki_url=Config.LOKI_PUSH_URL,
                tags={"app": Config.SERVICE_NAME, "environment": Config.APP_ENV},
            )
            loki_handler.setLevel(logging.INFO)
            loki_handler.setFormatter(StructuredFormatter())
            root_logger.addHandler(loki_handler)
            logger.info(f"Loki logging enabled: {Config.LOKI_PUSH_URL}")
            loki_enabled = True
        except Exception as e:
            logger.warning(f"Failed to configure Loki logging: {e}")
    else:
        logger.info("Loki logging disabled (LOKI_ENABLED=false)")

    # Set log levels for noisy libraries
    for noisy in ("httpx", "httpcore", "hpack", "stripe"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return loki_enabled

"""Main entry point for the CloudAMQP provisioner.

Sets up structured logging, wires SIGTERM/SIGINT to the shared cancellation
token so in-flight waits stop between polls, and hands over to the click CLI.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import sys
from datetime import UTC, datetime
from typing import Any

import click

from .cli import cli
from .poller import Cancellation

# LogRecord attributes that are not structured context
_RESERVED_ATTRS = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "exc_info",
    "exc_text",
    "thread",
    "threadName",
    "taskName",
    "message",
})


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", plain: bool = False) -> None:
    """Configure logging. JSON on stderr by default, stdout carries command output."""
    handler = logging.StreamHandler(sys.stderr)
    if plain:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    else:
        handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Reduce noise from the HTTP stack
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def install_signal_handlers(cancellation: Cancellation) -> None:
    logger = logging.getLogger(__name__)

    def signal_handler(signum: int, frame: Any) -> None:
        logger.info("Received signal, cancelling waits", extra={"signal": signal.Signals(signum).name})
        cancellation.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, signal_handler)


def main(argv: list[str] | None = None) -> int:
    """Run the CLI.

    Environment Variables:
        CLOUDAMQP_LOG_LEVEL: Root log level (default: INFO)
        CLOUDAMQP_LOG_FORMAT: json or plain (default: json)

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging(
        level=os.environ.get("CLOUDAMQP_LOG_LEVEL", "INFO"),
        plain=os.environ.get("CLOUDAMQP_LOG_FORMAT", "json").lower() == "plain",
    )

    cancellation = Cancellation()
    install_signal_handlers(cancellation)

    try:
        result = cli.main(args=argv, obj={"cancellation": cancellation}, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except click.Abort:
        click.echo("Aborted!", err=True)
        return 1
    except Exception as e:
        logging.getLogger(__name__).exception("Unhandled exception", extra={"error": str(e)})
        return 1
    return result if isinstance(result, int) else 0


def run() -> None:
    """Entry point for the console script."""
    sys.exit(main())


if __name__ == "__main__":
    run()

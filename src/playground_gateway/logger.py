import logging
import sys
from datetime import datetime, timezone

from pythonjsonlogger import jsonlogger

# Chatty client libraries; their per-request lines drown the session log
_QUIET_LOGGERS = ("httpx", "httpcore", "docker", "urllib3")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    One JSON object per line with `timestamp` (UTC, ISO 8601), an uppercase
    `level` and the `service` that emitted it.
    """
    def __init__(self, *args, service_name: str = "playground-gateway", **kwargs):
        super().__init__(*args, **kwargs)
        self.service_name = service_name

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record['timestamp'] = log_record.get('timestamp') or datetime.fromtimestamp(
            record.created, tz=timezone.utc
        ).isoformat()
        log_record['level'] = (log_record.get('level') or record.levelname).upper()
        log_record.setdefault('service', self.service_name)


def setup_logging(level=logging.INFO, service_name="playground-gateway"):
    """
    Route every log record to stdout as JSON. Safe to call again; earlier
    root handlers are replaced. `level` may be a name such as "DEBUG".
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(CustomJsonFormatter(
        '%(timestamp)s %(level)s %(name)s %(message)s',
        json_ensure_ascii=False,
        service_name=service_name,
    ))
    root.addHandler(stream)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


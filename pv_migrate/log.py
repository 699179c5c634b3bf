import json
import logging
import sys

LOGGER_NAME = "pv_migrate"

FORMAT_TEXT = "text"
FORMAT_JSON = "json"
FORMATS = [FORMAT_TEXT, FORMAT_JSON]

LEVELS = ["debug", "info", "warning", "error"]


# -----------------------------------------------------------------------------
# Structured fields
# -----------------------------------------------------------------------------
class FieldsAdapter(logging.LoggerAdapter):
    """
    Logger adapter carrying key/value fields, e.g. the attempt id and the
    strategy name. Nested adapters merge their fields, inner ones win.
    """

    def process(self, msg, kwargs):
        extra = dict(kwargs.pop("extra", None) or {})
        fields = dict(self.extra)
        fields.update(extra.pop("fields", {}))
        extra["fields"] = fields
        kwargs["extra"] = extra
        return msg, kwargs


def with_fields(logger, **fields):
    if isinstance(logger, FieldsAdapter):
        merged = dict(logger.extra)
        merged.update(fields)
        return FieldsAdapter(logger.logger, merged)
    return FieldsAdapter(logger, fields)


def get_logger():
    return logging.getLogger(LOGGER_NAME)


# -----------------------------------------------------------------------------
# Formatters
# -----------------------------------------------------------------------------
class TextFormatter(logging.Formatter):
    def format(self, record):
        line = super().format(record)
        fields = getattr(record, "fields", None) or {}
        if fields:
            suffix = " ".join(f"{k}={v}" for k, v in fields.items())
            line = f"{line} {suffix}"
        return line


class JSONFormatter(logging.Formatter):
    def format(self, record):
        payload = {
            "time": self.formatTime(record),
            "level": record.levelname.lower(),
            "msg": record.getMessage(),
        }
        payload.update(getattr(record, "fields", None) or {})
        if record.exc_info:
            payload["error"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure(level="info", fmt=FORMAT_TEXT, stream=None):
    """Install a single handler on the pv_migrate logger and return it."""
    if fmt not in FORMATS:
        raise ValueError(f"unknown log format: {fmt}")
    if level.lower() not in LEVELS:
        raise ValueError(f"unknown log level: {level}")

    handler = logging.StreamHandler(stream or sys.stderr)
    if fmt == FORMAT_JSON:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(TextFormatter("%(asctime)s %(levelname)-7s %(message)s", "%H:%M:%S"))

    logger = get_logger()
    for old in list(logger.handlers):
        logger.removeHandler(old)
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger

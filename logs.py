# logs.py
import json
import logging

from flask import has_request_context, request

FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(FORMAT))
        root.addHandler(handler)
    root.setLevel(getattr(logging, level, logging.INFO))


def _payload(context: dict) -> str:
    payload = {}
    if has_request_context():
        payload["path"] = request.path
        payload["method"] = request.method
    payload.update(context)
    return json.dumps(payload, ensure_ascii=False, default=str)


def log_event(logger: logging.Logger, level: int, event: str, **context) -> None:
    logger.log(level, "%s | %s", event, _payload(context))


def log_exception(logger: logging.Logger, event: str, **context) -> None:
    logger.exception("%s | %s", event, _payload(context))

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from companion_core.config.settings import settings


class JsonFormatter(logging.Formatter):
    """每条日志输出为一行 JSON，record.extra 中的字段平铺到顶层。"""

    def __init__(self, redact_content: bool = False):
        super().__init__()
        self._redact_content = redact_content

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if self._redact_content:
            msg = (msg or "")[:64]
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger() -> logging.Logger:
    logger = logging.getLogger("companion_core")
    logger.setLevel(logging.INFO)
    if any(getattr(h, "_companion_handler", False) for h in logger.handlers):
        return logger
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "companion.log", encoding="utf-8")
    fh.setLevel(logging.INFO)
    fh.setFormatter(JsonFormatter(redact_content=settings.log_redact_content))
    fh._companion_handler = True  # type: ignore[attr-defined]
    logger.addHandler(fh)
    return logger


def log_event(level: int, message: str, log_ctx: dict, **fields) -> None:
    """带上下文字段记录一条结构化日志。"""

    payload = dict(log_ctx)
    payload.update(fields)
    logger.log(level, message, extra={"extra": payload})


logger = setup_logger()

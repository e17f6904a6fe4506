import logging

from .context import peek_trace_id

LOG_FORMAT = "%(asctime)s %(levelname)s [%(trace_id)s] %(name)s: %(message)s"


class TraceIdFilter(logging.Filter):
    """ログレコードに発行元リクエストの trace id を付与する"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = peek_trace_id() or "-"
        return True


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if any(isinstance(f, TraceIdFilter) for h in root.handlers for f in h.filters):
        return
    handler = logging.StreamHandler()
    handler.addFilter(TraceIdFilter())
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.basicConfig(level=level.upper(), handlers=[handler])

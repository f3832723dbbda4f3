
import logging
import re
import sys

from .config import LOG_LEVEL

_REDACTIONS = (
    re.compile(r'("?(?:signed_xdr|signature)"?\s*[:=]\s*"?)[^"\s,}]+'),
    re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+"),
)


class RedactingFilter(logging.Filter):
    """Masks signatures, signed envelopes and bearer tokens in log output."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = message
        for pattern in _REDACTIONS:
            redacted = pattern.sub(r"\1[REDACTED]", redacted)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


def configure_logging(level: str = LOG_LEVEL):
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RedactingFilter())
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[handler],
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

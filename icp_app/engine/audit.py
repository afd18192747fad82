from datetime import datetime
import logging
import platform

logger = logging.getLogger(__name__)


def start_audit(context: str | None = None) -> list[str]:
    entries = [f"Session start: {datetime.now().isoformat()}",
               f"Platform: {platform.platform()}"]
    if context:
        entries.append(context)
    return entries


def log_step(audit: list[str], msg: str, *args):
    text = msg % args if args else msg
    audit.append(text)
    logger.info("%s", text)

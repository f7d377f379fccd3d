import logging
import os
import sys


class EmojiFormatter(logging.Formatter):
    """
    Prefixes each record with an emoji for its level, so attempts, repairs
    and fallbacks stand out in a long batch run.
    """

    LEVEL_EMOJIS = {
        logging.DEBUG: "🐛",
        logging.INFO: "✅",
        logging.WARNING: "⚠️",
        logging.ERROR: "❌",
    }

    def format(self, record):
        emoji = self.LEVEL_EMOJIS.get(record.levelno, "")
        return f"{emoji} {super().format(record)}"


def _resolve_level(level):
    if level is None:
        level = os.environ.get("CALCGEN_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(level=None):
    """
    Routes every calcgen logger through one stderr handler.
    Call once at the entry point; stdout stays free for the rendered module.
    `level` falls back to CALCGEN_LOG_LEVEL, then INFO.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_resolve_level(level))

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(EmojiFormatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))

    # Repeated calls (tests, embedding) must not stack handlers
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

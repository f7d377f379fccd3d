"""
Disk cache for generator replies.

Slow or rate-limited models make repeated runs expensive, so replies are
stored under `<root>/<purpose>/<sha256>.json`. Only prompt-derived
metadata and the reply text are written, never credentials.
"""

import hashlib
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

from calcgen.models.message import Message, messages_as_dicts

logger = logging.getLogger(__name__)

TextValidator = Callable[[str], bool]


def cache_key(model: str, messages: List[Message], temperature: float, purpose: str, attempt: int) -> str:
    payload = {
        "model": model,
        "messages": messages_as_dicts(messages),
        "temperature": temperature,
        "purpose": purpose,
        "attempt": attempt,
    }
    text = json.dumps(payload, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class ResponseCache:
    def __init__(self, root: os.PathLike, force: bool = False):
        self.root = Path(root)
        # force: ignore existing entries and overwrite them
        self.force = force

    def path_for(self, purpose: str, key: str) -> Path:
        return self.root / purpose / f"{key}.json"

    def read(self, path: Path) -> Optional[str]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable cache entry {path}: {e}")
            return None
        text = raw.get("text") if isinstance(raw, dict) else None
        return text if isinstance(text, str) else None

    def write(self, path: Path, model: str, text: str) -> None:
        """Atomic write; a failed write is logged and otherwise ignored."""
        entry = {
            "created_at": datetime.now(timezone.utc).isoformat(),
            "model": model,
            "text": text,
        }
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(entry, f, ensure_ascii=False, indent=2)
                    f.write("\n")
                os.replace(tmp, path)
            except BaseException:
                os.unlink(tmp)
                raise
        except OSError as e:
            logger.warning(f"Could not write cache entry {path}: {e}")

    def fetch_or_populate(
        self,
        model: str,
        messages: List[Message],
        temperature: float,
        purpose: str,
        attempt: int,
        produce: Callable[[], str],
        validate: Optional[TextValidator] = None,
    ) -> str:
        """
        Cached reply for this exact request, or a fresh one from `produce`.

        With `validate`, a cached reply that fails it is ignored (refetched)
        and a fresh reply that fails it is returned but not stored.
        """
        key = cache_key(model, messages, temperature, purpose, attempt)
        path = self.path_for(purpose, key)

        if not self.force:
            cached = self.read(path)
            if cached is not None:
                if validate is None or validate(cached):
                    logger.debug(f"Cache hit for {purpose} ({key[:12]})")
                    return cached
                logger.info(f"Cached {purpose} reply {key[:12]} is no longer valid; refetching")

        text = produce()
        if validate is None or validate(text):
            self.write(path, model, text)
        else:
            logger.debug(f"Not caching invalid {purpose} reply {key[:12]}")
        return text

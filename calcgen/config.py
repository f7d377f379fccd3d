"""
Runtime configuration.

Values come from the environment (a `.env` file is loaded by the entry
point with python-dotenv). Connector credentials stay with the connectors;
this module only holds pipeline knobs.
"""

import logging
import os
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from calcgen.llm.llm_connector import LLMConnector

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = ".cache/llm"


class Settings(BaseModel):
    llm_provider: Literal["openai", "gemini", "none"] = Field(
        "openai", description="Which connector builds plans; 'none' uses the heuristic only."
    )
    max_attempts: int = Field(3, ge=1, le=10, description="Generator attempts before falling back.")
    cache_dir: Optional[str] = Field(DEFAULT_CACHE_DIR, description="Response cache root; empty disables caching.")
    created_by: str = Field("calcgen", description="Provenance string written into rendered modules.")
    log_level: str = Field("INFO")

    @classmethod
    def from_env(cls) -> "Settings":
        raw = {
            "llm_provider": os.environ.get("CALCGEN_LLM_PROVIDER"),
            "max_attempts": os.environ.get("CALCGEN_MAX_ATTEMPTS"),
            "cache_dir": os.environ.get("CALCGEN_CACHE_DIR"),
            "created_by": os.environ.get("CALCGEN_CREATED_BY"),
            "log_level": os.environ.get("CALCGEN_LOG_LEVEL"),
        }
        values = {k: v.strip() for k, v in raw.items() if v is not None}
        if "llm_provider" in values:
            values["llm_provider"] = values["llm_provider"].lower()
        if values.get("cache_dir") == "":
            values["cache_dir"] = None
        try:
            return cls(**values)
        except ValidationError as e:
            logger.error(f"Invalid CALCGEN_* configuration: {e}")
            raise ValueError(f"Invalid CALCGEN_* configuration: {e}")


def make_connector(settings: Settings) -> Optional[LLMConnector]:
    """Connector for the configured provider; None when the provider is 'none'."""
    if settings.llm_provider == "none":
        return None
    if settings.llm_provider == "gemini":
        from calcgen.llm.gemini_connector import GeminiConnector

        return GeminiConnector()
    from calcgen.llm.openai_connector import OpenAIConnector

    return OpenAIConnector()

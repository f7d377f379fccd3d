import logging
import os
from typing import List

import openai

from calcgen.llm.llm_connector import LLMConnector
from calcgen.models.message import Message, messages_as_dicts

logger = logging.getLogger(__name__)


class OpenAIConnector(LLMConnector):
    """
    Any OpenAI-compatible chat completions endpoint.

    Reference : https://deepwiki.com/openai/openai-python/4.1-chat-completions-api
    """

    REQUIRED_ENV = ("OPENAI_API_BASE_URL", "OPENAI_API_KEY", "OPENAI_API_MODEL")

    def __init__(self):
        missing = [name for name in self.REQUIRED_ENV if not os.environ.get(name)]
        if missing:
            logger.error(f"OpenAI connector is missing configuration: {', '.join(missing)}")
            raise ValueError(f"{missing[0]} environment variable not set.")
        self.base_url = os.environ["OPENAI_API_BASE_URL"]
        self.model_name = os.environ["OPENAI_API_MODEL"]
        self.client = openai.OpenAI(base_url=self.base_url, api_key=os.environ["OPENAI_API_KEY"])

    def chat(self, messages: List[Message], temperature: float = 0.2) -> str:
        response = self.client.chat.completions.create(
            model=self.model_name,
            messages=messages_as_dicts(messages),
            temperature=temperature,
        )
        if not response.choices:
            raise ValueError("OpenAI returned no choices.")
        content = response.choices[0].message.content
        if not content:
            logger.error(f"Empty completion from {self.model_name} (finish_reason={response.choices[0].finish_reason})")
            raise ValueError("OpenAI returned an empty completion.")
        return content

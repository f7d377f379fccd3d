import logging
import os
from typing import List

from google import genai
from google.genai import types

from calcgen.llm.llm_connector import LLMConnector
from calcgen.models.message import Message

logger = logging.getLogger(__name__)


class GeminiConnector(LLMConnector):
    def __init__(self):
        api_key = os.environ.get("GEMINI_API_KEY")
        if not api_key:
            logger.error("GEMINI_API_KEY environment variable not set.")
            raise ValueError("GEMINI_API_KEY environment variable not set.")

        self.model_name = os.environ.get("GEMINI_API_MODEL")
        if not self.model_name:
            self.model_name = "gemini-flash-latest"

        self.client = genai.Client(api_key=api_key)
        self.default_max_tokens = 65535
        self.default_thinking_budget = 8000

    def _convert_messages(self, messages: List[Message]):
        """Gemini takes the system prompt in the config and calls the assistant 'model'."""
        system_parts = []
        contents = []
        for msg in messages:
            if msg.role == "system":
                system_parts.append(types.Part.from_text(text=msg.content))
                continue
            role = "model" if msg.role == "assistant" else "user"
            contents.append(types.Content(role=role, parts=[types.Part.from_text(text=msg.content)]))
        if not contents:
            contents.append(types.Content(role="user", parts=[types.Part.from_text(text="Please proceed.")]))
        return system_parts, contents

    def chat(self, messages: List[Message], temperature: float = 0.2) -> str:
        system_parts, contents = self._convert_messages(messages)
        generation_config = types.GenerateContentConfig(
            system_instruction=system_parts or None,
            temperature=temperature,
            response_mime_type="application/json",
            max_output_tokens=self.default_max_tokens,
            thinking_config=types.ThinkingConfig(
                thinking_budget=self.default_thinking_budget
            ),
        )

        response = self.client.models.generate_content(
            model=self.model_name, contents=contents, config=generation_config
        )
        if response.text:
            return response.text

        raise ValueError("Gemini returned empty response (blocked or error).")

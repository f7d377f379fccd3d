from abc import ABC, abstractmethod
from typing import List

from calcgen.models.message import Message


class LLMConnector(ABC):
    # Identifier of the backing model; part of the response cache key
    model_name: str = ""

    @abstractmethod
    def chat(self, messages: List[Message], temperature: float = 0.2) -> str:
        """Sends a system + user conversation and returns the raw text of the reply."""
        pass

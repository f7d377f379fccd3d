from typing import Dict, List

from pydantic import BaseModel, Field


class Message(BaseModel):
    role: str = Field(
        ...,
        description="Message role: 'system', 'user' or 'assistant'.",
    )
    content: str = Field(
        ...,
        description="Text content of the message.",
    )


def messages_as_dicts(messages: List[Message]) -> List[Dict[str, str]]:
    """OpenAI-style role/content dicts; also the form the response cache hashes."""
    return [{"role": m.role, "content": m.content} for m in messages]

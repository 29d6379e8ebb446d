"""
Conversation Context
Caller-supplied conversation state that shapes strategy selection and reranking
"""

from typing import List, Dict, Any, Optional, Union
from dataclasses import dataclass, field


@dataclass
class Message:
    """A single conversation turn"""
    role: str
    content: str


@dataclass
class ConversationContext:
    """Conversation state and retrieval filters for one request"""
    message_history: List[Message] = field(default_factory=list)
    previous_topics: List[str] = field(default_factory=list)
    current_topic: Optional[str] = None
    previously_relevant_sections: List[str] = field(default_factory=list)
    source_ids: List[str] = field(default_factory=list)
    domain: Optional[str] = None
    min_quality_score: Optional[float] = None

    @property
    def has_context(self) -> bool:
        """True when any conversational signal is present (filters do not count)"""
        return bool(
            self.message_history
            or self.previous_topics
            or self.current_topic
            or self.previously_relevant_sections
        )

    @property
    def conversation_length(self) -> int:
        return len(self.message_history)

    def recent_messages(self, count: int) -> List[Message]:
        return self.message_history[-count:] if count > 0 else []

    @classmethod
    def from_value(
        cls, value: Union["ConversationContext", Dict[str, Any], None]
    ) -> "ConversationContext":
        """
        Build a context from a dict (as sent by an orchestrator) or pass one through

        Messages may be ``Message`` objects, dicts with role/content, or any
        object exposing ``role`` and ``content`` attributes.
        """
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value

        history = [
            to_message(message) for message in value.get("message_history", []) or []
        ]
        return cls(
            message_history=history,
            previous_topics=list(value.get("previous_topics", []) or []),
            current_topic=value.get("current_topic"),
            previously_relevant_sections=list(
                value.get("previously_relevant_sections", []) or []
            ),
            source_ids=list(value.get("source_ids", []) or []),
            domain=value.get("domain"),
            min_quality_score=value.get("min_quality_score"),
        )


def to_message(message: Any) -> Message:
    if isinstance(message, Message):
        return message
    if isinstance(message, dict):
        return Message(role=message.get("role", "user"), content=message.get("content", ""))
    # Convert Pydantic models or other objects with role/content attributes
    return Message(role=message.role, content=message.content)

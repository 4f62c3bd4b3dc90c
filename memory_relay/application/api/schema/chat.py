from typing import Dict, Any, Optional, List

from pydantic import BaseModel, ConfigDict, Field


class ChatMessage(BaseModel):
    """Chat message as sent by the client; unknown keys are kept"""
    model_config = ConfigDict(extra="allow")

    role: str
    content: Any = None


class ChatCompletionRequest(BaseModel):
    """Chat-completion request; fields other than the relay's own pass through"""
    model_config = ConfigDict(extra="allow")

    messages: List[ChatMessage] = Field(..., min_length=1, description="Ordered role/content messages")
    conversation_id: Optional[str] = Field(None, description="Explicit conversation identifier")
    stream: bool = Field(default=False, description="Relay server-sent delta chunks")

    def message_dicts(self) -> List[Dict[str, Any]]:
        """Messages exactly as the client sent them"""
        return [message.model_dump(exclude_unset=True) for message in self.messages]

    def passthrough_fields(self) -> Dict[str, Any]:
        """Client fields forwarded unchanged to upstream"""
        return self.model_dump(exclude_unset=True, exclude={"messages", "conversation_id", "stream"})

"""Pydantic schemas for request/response models"""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID


# Conversation schemas
class ChatMessage(BaseModel):
    """One transcript entry in OpenAI chat-completions format"""

    role: Literal["user", "assistant", "tool"]
    content: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    def to_provider(self) -> Dict[str, Any]:
        """Serialize for the provider, dropping unset optional fields"""
        return self.model_dump(exclude_none=True)


class AssistantRequest(BaseModel):
    message: str = Field(..., min_length=1)
    clinic_id: UUID
    phone: Optional[str] = None
    conversation_history: List[ChatMessage] = Field(default_factory=list)


class AssistantResponse(BaseModel):
    response: Optional[str] = None
    handoff_to_booking: bool = False
    action: Optional[str] = None
    tool_calls_made: int = 0
    error: Optional[str] = None


# Tool call schemas
class ToolCall(BaseModel):
    id: str
    name: str
    arguments: str = "{}"


class ToolResult(BaseModel):
    """Envelope returned by every tool; extra keys carry the payload"""

    success: bool
    message: Optional[str] = None

    model_config = {"extra": "allow"}

"""API request and response models."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator


class ChatRequest(BaseModel):
    """Body of POST /chat. Accepts snake_case or camelCase keys."""
    user_prompt: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("user_prompt", "userPrompt", "prompt"),
    )
    turn_index: Optional[int] = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("turn_index", "turnIndex", "turn"),
        description="Caller-declared previous turn number; omitted means 'append next'",
    )
    conversation_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("conversation_id", "conversationId"),
    )
    include_history: bool = Field(
        default=True,
        validation_alias=AliasChoices("include_history", "includeHistory"),
    )

    @field_validator("user_prompt")
    @classmethod
    def prompt_is_hashable_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("user_prompt cannot be blank")
        try:
            value.encode("utf-8")
        except UnicodeEncodeError:
            raise ValueError("user_prompt contains characters that cannot be encoded as UTF-8")
        return value


class Trace(BaseModel):
    """Timing of the inference call."""
    request_timestamp: str
    response_timestamp: str
    duration_ms: int
    method: str
    model: str
    url: str


class TokenUsage(BaseModel):
    input: int
    output: int


class ResponseMetadata(BaseModel):
    """Model and token accounting for a recorded turn."""
    model_used: str
    tokens: TokenUsage
    prompt_tokens: Optional[int] = None
    history_turns: int


class ChatResponse(BaseModel):
    """Body returned for a recorded turn."""
    response: Dict[str, Any]
    conversation_id: str
    turn_index: int
    chain_hash: str
    hash_msg: str
    trace: Trace
    metadata: ResponseMetadata
    latency_ms: int


class TurnRecord(BaseModel):
    """A stored turn as returned by GET /history."""
    conversation_id: str
    turn_index: int
    user_prompt: str
    response: str
    machine_state: Optional[str] = None
    content_hash: str
    chain_hash: str
    retrieved_context: Optional[str] = None
    created_at: Optional[datetime] = None


class InvalidTurnDetail(BaseModel):
    conversation_id: str
    turn_index: int
    content_valid: bool
    chain_valid: bool


class VerificationResponse(BaseModel):
    """Body returned by GET /verify."""
    valid: bool
    total_turns: int
    invalid_turns: int
    conversations_verified: int
    message: Optional[str] = None
    invalid: List[InvalidTurnDetail] = []


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = {}


class ErrorResponse(BaseModel):
    error: ErrorDetail

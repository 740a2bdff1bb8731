"""Ledger turn data models."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class Turn:
    """
    One immutable ledger entry.

    ``content_hash`` covers turn_index, user_prompt, response and
    machine_state; ``chain_hash`` links it to the previous turn of the same
    conversation. ``created_at`` is informational and not hashed.
    """
    conversation_id: str
    turn_index: int
    user_prompt: str
    response: str
    machine_state: Optional[str]
    content_hash: str
    chain_hash: str
    full_prompt: Optional[str] = None
    retrieved_context: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class HistoryEntry:
    """A prior exchange rendered into the next prompt."""
    turn_index: int
    user_prompt: str
    response: str


@dataclass(frozen=True)
class ChainHead:
    """Latest link of a conversation's chain."""
    turn_index: int
    chain_hash: str


@dataclass
class TimingTrace:
    """Timing of one outbound call."""
    request_timestamp: str
    response_timestamp: str
    duration_ms: int
    method: str = "POST"
    model: str = ""
    url: str = ""
    error: bool = False


@dataclass
class TurnResult:
    """Outcome of a successful submission."""
    conversation_id: str
    turn_index: int
    structured_response: Dict[str, Any]
    chain_hash: str
    content_hash: str
    trace: TimingTrace
    latency_ms: int
    prompt_tokens: Optional[int] = None
    retrieved_context: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

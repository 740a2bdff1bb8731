"""Chain verification result models."""
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass(frozen=True)
class InvalidTurn:
    """A stored turn whose recomputed hashes disagree with the stored ones."""
    conversation_id: str
    turn_index: int
    content_valid: bool
    chain_valid: bool


@dataclass
class VerificationResult:
    """Aggregate outcome of replaying stored turns."""
    valid: bool
    total_turns: int
    invalid_turns: int
    conversations_verified: int
    message: Optional[str] = None
    invalid: List[InvalidTurn] = field(default_factory=list)

"""Data models for the Turn Ledger service."""
from .document import Document, Page
from .chunk import Chunk, ScoredChunk
from .turn import Turn, HistoryEntry, ChainHead, TimingTrace, TurnResult
from .verification import InvalidTurn, VerificationResult
from .api import (
    ChatRequest,
    ChatResponse,
    ErrorResponse,
    ResponseMetadata,
    TokenUsage,
    Trace,
    TurnRecord,
    VerificationResponse,
)

__all__ = [
    "Document",
    "Page",
    "Chunk",
    "ScoredChunk",
    "Turn",
    "HistoryEntry",
    "ChainHead",
    "TimingTrace",
    "TurnResult",
    "InvalidTurn",
    "VerificationResult",
    "ChatRequest",
    "ChatResponse",
    "Trace",
    "TokenUsage",
    "ResponseMetadata",
    "TurnRecord",
    "VerificationResponse",
    "ErrorResponse",
]

"""Chunk data models."""
from dataclasses import dataclass, field
from typing import List


@dataclass
class Chunk:
    """Represents a document chunk for retrieval."""
    chunk_id: str  # Format: "{filename}-{chunk_index}"
    text: str
    document_name: str
    chunk_index: int
    word_count: int = 0


@dataclass
class ScoredChunk:
    """Chunk with keyword score from retrieval."""
    chunk: Chunk
    score: float
    matched_words: List[str] = field(default_factory=list)

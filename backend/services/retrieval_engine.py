"""Keyword retrieval over local documents."""
import logging
import re
from abc import ABC, abstractmethod
from typing import List

from models.chunk import Chunk, ScoredChunk
from services.chunking_engine import ChunkingEngine
from services.document_loader import DocumentLoader

logger = logging.getLogger(__name__)

STOP_WORDS = {
    "the", "is", "at", "which", "on", "and", "a", "to", "are", "as",
    "was", "with", "for", "of", "in", "by", "an", "be", "or", "that",
    "this", "will", "you", "have", "it", "not", "can", "from", "they",
    "we", "been", "has", "had", "do", "would", "could", "should"
}

MAX_KEYWORDS = 10
MIN_QUERY_LENGTH = 3

EXACT_MATCH_POINTS = 3
PARTIAL_MATCH_POINTS = 1
SHORT_CHUNK_WORDS = 100
SHORT_CHUNK_BONUS = 0.5
LONG_CHUNK_WORDS = 200
LONG_CHUNK_PENALTY = 0.8

RESULT_SEPARATOR = "\n\n---\n\n"


class RetrievalProvider(ABC):
    """Anything that can turn a query into context text."""

    @abstractmethod
    def search(self, query: str) -> str:
        """Return formatted context for the query, or an empty string."""


class KeywordRetriever(RetrievalProvider):
    """Scores chunks by keyword overlap with the query."""

    def __init__(self, chunks: List[Chunk], max_results: int = 3, min_score: float = 1.0):
        """
        Initialize the retriever.

        Args:
            chunks: Chunks to search
            max_results: Maximum number of chunks returned per query
            min_score: Chunks scoring below this are dropped
        """
        self.chunks = chunks
        self.max_results = max_results
        self.min_score = min_score
        logger.info(f"Initialized KeywordRetriever with {len(chunks)} chunks")

    @classmethod
    def from_directory(
        cls,
        docs_directory: str,
        max_results: int = 3,
        min_score: float = 1.0,
        chunk_size: int = 500,
        chunk_overlap: int = 50
    ) -> "KeywordRetriever":
        """Load, chunk and index every document under ``docs_directory``."""
        documents = DocumentLoader(docs_directory).load_documents()
        chunks = ChunkingEngine(chunk_size, chunk_overlap).chunk_documents(documents)
        return cls(chunks, max_results=max_results, min_score=min_score)

    @staticmethod
    def extract_keywords(query: str) -> List[str]:
        words = re.sub(r"[^\w\s]", " ", query.lower()).split()
        keywords = [w for w in words if len(w) > 2 and w not in STOP_WORDS]
        return keywords[:MAX_KEYWORDS]

    def retrieve(self, query: str) -> List[ScoredChunk]:
        """
        Score every chunk against the query.

        Args:
            query: User question

        Returns:
            Up to ``max_results`` scored chunks, best first
        """
        if not self.chunks:
            logger.debug("No documents indexed, skipping retrieval")
            return []

        clean_query = query.strip() if query else ""
        if len(clean_query) < MIN_QUERY_LENGTH:
            logger.debug("Query too short for retrieval")
            return []

        keywords = self.extract_keywords(clean_query)
        if not keywords:
            logger.debug("No meaningful keywords extracted from query")
            return []

        scored = []
        for chunk in self.chunks:
            score = self._score(chunk, keywords)
            if score >= self.min_score:
                chunk_text = chunk.text.lower()
                scored.append(ScoredChunk(
                    chunk=chunk,
                    score=round(score, 2),
                    matched_words=[w for w in keywords if w in chunk_text],
                ))

        scored.sort(key=lambda s: s.score, reverse=True)
        top = scored[:self.max_results]

        logger.info(f"Retrieved {len(top)} chunks for keywords {keywords}")
        return top

    def search(self, query: str) -> str:
        """
        Retrieve and format context for the query.

        Returns:
            ``[n] [From file]:`` blocks separated by ``---`` lines, or ""
        """
        top = self.retrieve(query)
        if not top:
            return ""

        blocks = []
        for index, scored in enumerate(top, 1):
            prefix = f"[{index}] " if len(top) > 1 else ""
            blocks.append(f"{prefix}[From {scored.chunk.document_name}]:\n{scored.chunk.text}")
        return RESULT_SEPARATOR.join(blocks)

    def _score(self, chunk: Chunk, keywords: List[str]) -> float:
        chunk_text = chunk.text.lower()
        word_count = len(chunk_text.split())
        score = 0.0

        for word in keywords:
            exact = len(re.findall(rf"\b{re.escape(word)}\b", chunk_text))
            partial = chunk_text.count(word) - exact
            score += exact * EXACT_MATCH_POINTS + partial * PARTIAL_MATCH_POINTS

            if exact > 0 and word_count < SHORT_CHUNK_WORDS:
                score += SHORT_CHUNK_BONUS

        if word_count > LONG_CHUNK_WORDS:
            score *= LONG_CHUNK_PENALTY

        return score

"""Chunking engine splitting documents into sentence-aligned chunks."""
import logging
import re
from typing import List

from models.chunk import Chunk
from models.document import Document

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_UNUSUAL_CHARS = re.compile(r"[^\w\s.,!?;:()\"'-]")
_SENTENCE_END = re.compile(r"[.!?]+")

MIN_TEXT_LENGTH = 50
MIN_SENTENCE_LENGTH = 10
MIN_CHUNK_WORDS = 5
MIN_CHUNK_LENGTH = 30


class ChunkingEngine:
    """Segments documents into retrievable chunks."""

    def __init__(self, chunk_size: int = 500, chunk_overlap: int = 50):
        """
        Initialize ChunkingEngine.

        Args:
            chunk_size: Maximum chunk size in characters
            chunk_overlap: Overlap budget in characters, carried as whole words
        """
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    def chunk_documents(self, documents: List[Document]) -> List[Chunk]:
        """
        Chunk every document into Chunk objects.

        Args:
            documents: List of loaded documents

        Returns:
            List of Chunk objects in document order
        """
        all_chunks = []

        for document in documents:
            texts = self.split_text(document.text)
            if not texts:
                logger.warning(f"No usable chunks created from {document.filename}")
                continue

            for idx, text in enumerate(texts):
                all_chunks.append(Chunk(
                    chunk_id=f"{document.filename}-{idx}",
                    text=text,
                    document_name=document.filename,
                    chunk_index=idx,
                    word_count=len(text.split()),
                ))
            logger.info(f"Added {len(texts)} chunks from {document.filename}")

        logger.info(f"Created {len(all_chunks)} chunks from {len(documents)} documents")
        return all_chunks

    def split_text(self, text: str) -> List[str]:
        """
        Split text into sentence-aligned chunks of at most ``chunk_size`` chars.

        When a chunk is closed, the next one starts with the trailing words of
        the previous one (about one word per five overlap characters).
        """
        clean_text = _UNUSUAL_CHARS.sub(" ", _WHITESPACE.sub(" ", text)).strip()
        clean_text = _WHITESPACE.sub(" ", clean_text)

        if len(clean_text) < MIN_TEXT_LENGTH:
            return []

        sentences = [
            s.strip() for s in _SENTENCE_END.split(clean_text)
            if len(s.strip()) > MIN_SENTENCE_LENGTH
        ]

        chunks = []
        current_chunk = ""

        for sentence in sentences:
            potential_chunk = current_chunk + (". " if current_chunk else "") + sentence

            if len(potential_chunk) > self.chunk_size and current_chunk:
                chunks.append(current_chunk.strip() + ".")

                words = current_chunk.split()
                overlap_count = int(min(self.chunk_overlap / 5, len(words) / 2))
                overlap_words = words[-overlap_count:] if overlap_count > 0 else []
                current_chunk = " ".join(overlap_words) + (". " if overlap_words else "") + sentence
            else:
                current_chunk = potential_chunk

        if current_chunk.strip():
            final_chunk = current_chunk.strip()
            chunks.append(final_chunk if final_chunk.endswith(".") else final_chunk + ".")

        return [
            chunk for chunk in chunks
            if len(chunk.split()) >= MIN_CHUNK_WORDS and len(chunk) >= MIN_CHUNK_LENGTH
        ]

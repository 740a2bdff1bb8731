"""Document data models."""
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class Page:
    """Represents a single page from a document."""
    page_number: int
    text: str
    word_count: int


@dataclass
class Document:
    """Represents a loaded source document (PDF or plain text)."""
    filename: str
    pages: List[Page]
    total_pages: int
    source_path: Optional[str] = None

    @property
    def text(self) -> str:
        return "\n".join(page.text for page in self.pages)

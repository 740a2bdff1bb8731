"""Document loading service for retrieval sources."""
import logging
import os
from typing import List, Optional

import fitz  # PyMuPDF

from models.document import Document, Page

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = (".txt", ".md")
SUPPORTED_EXTENSIONS = (".pdf",) + TEXT_EXTENSIONS


class DocumentLoader:
    """Loads and extracts text from PDF and plain-text files."""

    def __init__(self, docs_directory: str = "documents"):
        """
        Initialize DocumentLoader.

        Args:
            docs_directory: Path to directory containing source documents
        """
        self.docs_directory = docs_directory

    def load_documents(self) -> List[Document]:
        """
        Load all supported files from the documents directory.

        Returns:
            List of Document objects with text, filename, and page numbers
        """
        documents = []

        if not os.path.isdir(self.docs_directory):
            logger.error(f"Documents directory not found: {self.docs_directory}")
            return documents

        source_files = [
            f for f in os.listdir(self.docs_directory)
            if f.lower().endswith(SUPPORTED_EXTENSIONS)
        ]
        logger.info(f"Found {len(source_files)} documents in {self.docs_directory}")

        for filename in sorted(source_files):
            filepath = os.path.join(self.docs_directory, filename)

            try:
                document = self._load_file(filepath, filename)
            except Exception as e:
                logger.error(f"Error loading {filename}: {str(e)}", exc_info=True)
                # Skip corrupted file and continue
                continue

            if document:
                documents.append(document)
                logger.info(f"Loaded {filename}: {document.total_pages} pages")

        logger.info(f"Successfully loaded {len(documents)} documents")
        return documents

    def _load_file(self, filepath: str, filename: str) -> Optional[Document]:
        if filename.lower().endswith(".pdf"):
            return self._load_pdf(filepath, filename)
        return self._load_text(filepath, filename)

    def _load_pdf(self, filepath: str, filename: str) -> Document:
        """
        Load a single PDF file and extract text page-by-page.

        Args:
            filepath: Full path to PDF file
            filename: Name of the file

        Returns:
            Document object with extracted text
        """
        pages = []
        with fitz.open(filepath) as pdf_document:
            for page_num in range(len(pdf_document)):
                text = pdf_document[page_num].get_text()
                pages.append(Page(
                    page_number=page_num + 1,  # 1-indexed
                    text=text,
                    word_count=len(text.split())
                ))

        return Document(filename=filename, pages=pages, total_pages=len(pages), source_path=filepath)

    def _load_text(self, filepath: str, filename: str) -> Document:
        with open(filepath, encoding="utf-8") as handle:
            text = handle.read()

        page = Page(page_number=1, text=text, word_count=len(text.split()))
        return Document(filename=filename, pages=[page], total_pages=1, source_path=filepath)

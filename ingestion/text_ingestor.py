from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Sequence

from core.errors import DocumentLoadError
from core.models import Document
from core.utils import slugify

logger = logging.getLogger(__name__)

TEXT_SUFFIXES = (".txt", ".md", ".csv", ".tsv", ".json", ".text")


class DirectoryDocumentSource:
    """Reads already-extracted text files from a directory.

    PDF and spreadsheet parsing happen upstream; this source only expects their text
    exports (sheet exports keep their ``--- Sheet: <name> ---`` delimiters). Files are
    re-read on every ``list_files`` call so a batch always sees the current corpus.
    """

    def __init__(
        self,
        directory: Path,
        *,
        suffixes: Sequence[str] = TEXT_SUFFIXES,
        recursive: bool = True,
        encoding: str = "utf-8",
    ) -> None:
        self.directory = Path(directory)
        self.suffixes = tuple(s.lower() for s in suffixes)
        self.recursive = recursive
        self.encoding = encoding

    def list_files(self) -> List[Document]:
        if not self.directory.is_dir():
            raise DocumentLoadError(f"Source directory does not exist: {self.directory}")
        pattern = "**/*" if self.recursive else "*"
        paths = sorted(p for p in self.directory.glob(pattern) if p.is_file() and p.suffix.lower() in self.suffixes)
        docs: List[Document] = []
        slug_counts: Dict[str, int] = {}
        for path in paths:
            rel = path.relative_to(self.directory)
            slug = slugify(str(rel.with_suffix("")))
            if slug in slug_counts:
                slug_counts[slug] += 1
                slug = f"{slug}-{slug_counts[slug]}"
            else:
                slug_counts[slug] = 1
            raw = path.read_bytes()
            text = normalize_text(raw.decode(self.encoding, errors="replace"))
            logger.debug("[ingest] %s (%d chars)", rel, len(text))
            docs.append(Document(id=slug, name=path.name, text_content=text, size_bytes=len(raw)))
        logger.info("[ingest] %d document(s) from %s", len(docs), self.directory)
        return docs


class StaticDocumentSource:
    """In-memory document list, for callers that already hold extracted text."""

    def __init__(self, documents: Iterable[Document]) -> None:
        self._documents = list(documents)

    def list_files(self) -> List[Document]:
        return list(self._documents)


def normalize_text(text: str) -> str:
    # Line structure is kept because sheet delimiters and table rows depend on it.
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [line.rstrip() for line in text.split("\n")]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()

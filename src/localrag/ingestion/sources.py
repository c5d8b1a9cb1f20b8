"""Document sources feeding the ingestion pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Mapping, Protocol, Sequence, Tuple

from langchain_community.document_loaders import Docx2txtLoader, PyPDFLoader, TextLoader
from langchain_core.document_loaders import BaseLoader

from localrag.metrics.observability import get_logger


@dataclass(frozen=True)
class SourceDocument:
    """Raw text handed over by a document source."""

    project_id: str
    file_name: str
    raw_text: str
    content_type: str = "text/plain"


class DocumentSource(Protocol):
    """Anything that can yield source documents for one project."""

    def documents(self) -> Iterator[SourceDocument]:
        """Yield documents in a stable order."""


class DirectorySource:
    """Read supported files from a folder through LangChain document loaders.

    PDFs yield one LangChain document per page; the pages are joined with
    newlines into a single source document.
    """

    _LOADERS: Mapping[str, Tuple[type[BaseLoader], str]] = {
        ".txt": (TextLoader, "text/plain"),
        ".md": (TextLoader, "text/markdown"),
        ".pdf": (PyPDFLoader, "application/pdf"),
        ".docx": (Docx2txtLoader, "application/vnd.openxmlformats-officedocument.wordprocessingml.document"),
    }

    _logger = get_logger("ingestion.sources")

    def __init__(
        self,
        directory: Path,
        project_id: str,
        *,
        recursive: bool = False,
        encoding: str = "utf-8",
    ) -> None:
        self._directory = Path(directory)
        self._project_id = project_id
        self._recursive = recursive
        self._encoding = encoding

    def paths(self) -> Sequence[Path]:
        if not self._directory.is_dir():
            raise FileNotFoundError(f"Document directory not found: {self._directory}")
        candidates = self._directory.rglob("*") if self._recursive else self._directory.iterdir()
        return sorted(
            path for path in candidates if path.is_file() and path.suffix.lower() in self._LOADERS
        )

    def documents(self) -> Iterator[SourceDocument]:
        for path in self.paths():
            loader_cls, content_type = self._LOADERS[path.suffix.lower()]
            loaded = self._build_loader(loader_cls, path).load()
            separator = "" if loader_cls is TextLoader else "\n"
            text = separator.join(document.page_content for document in loaded)
            self._logger.debug("source.loaded", path=str(path), size_chars=len(text))
            yield SourceDocument(
                project_id=self._project_id,
                file_name=path.relative_to(self._directory).as_posix(),
                raw_text=text,
                content_type=content_type,
            )

    def _build_loader(self, loader_cls: type[BaseLoader], path: Path) -> BaseLoader:
        if loader_cls is TextLoader:
            return loader_cls(str(path), encoding=self._encoding)
        return loader_cls(str(path))

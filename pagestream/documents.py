from enum import Enum
from pathlib import PurePosixPath

from .paging import PairingMode

PDF_EXTS = {".pdf"}


class DocumentKind(str, Enum):
    """Kinds of page-addressable documents the reader can page through."""

    COMIC = "comic"
    PDF = "pdf"

    @classmethod
    def from_path(cls, document_id: str) -> "DocumentKind":
        suffix = PurePosixPath(document_id.replace("\\", "/")).suffix.lower()
        return cls.PDF if suffix in PDF_EXTS else cls.COMIC

    @property
    def page_path(self) -> str:
        return "/pdf-page" if self is DocumentKind.PDF else "/comic-preview"

    @property
    def renders_at_dpi(self) -> bool:
        return self is DocumentKind.PDF

    @property
    def default_pairing(self) -> PairingMode:
        # PDFs open as books with a cover; comic archives page two at a time
        if self is DocumentKind.PDF:
            return PairingMode.DOUBLE_COVER
        return PairingMode.DOUBLE_CONTIGUOUS

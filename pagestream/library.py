import mimetypes
import shutil
import zipfile
import logging
from pathlib import Path

try:
    import rarfile  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    rarfile = None

try:
    import fitz  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    fitz = None

try:
    from pypdf import PdfReader  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    PdfReader = None

logger = logging.getLogger(__name__)

if rarfile is not None:
    # Prefer tools with better support for modern RAR/CBR variants.
    _rar_tool = None
    for candidate in ("unar", "unrar", "7zz", "7z", "bsdtar"):
        if shutil.which(candidate):
            _rar_tool = candidate
            break
    if _rar_tool == "unar":
        rarfile.UNAR_TOOL = "unar"
    elif _rar_tool == "unrar":
        rarfile.UNRAR_TOOL = "unrar"
    elif _rar_tool in {"7zz", "7z"}:
        rarfile.SEVENZIP_TOOL = _rar_tool
    elif _rar_tool == "bsdtar":
        rarfile.BSDTAR_TOOL = "bsdtar"
    else:
        logger.warning("No RAR extraction backend found on PATH; .cbr files may fail")

IMAGE_EXTS = {".jpg", ".jpeg", ".png", ".webp", ".gif"}
ZIP_EXTS = {".cbz", ".zip"}
RAR_EXTS = {".cbr"}
ARCHIVE_EXTS = ZIP_EXTS | RAR_EXTS
PDF_EXTS = {".pdf"}
MIN_DPI = 72
MAX_DPI = 400


class UnreadableDocument(Exception):
    """The file exists but its pages cannot be listed (corrupt or unsupported archive)."""


def is_image_name(name: str) -> bool:
    return Path(name).suffix.lower() in IMAGE_EXTS


def is_image_file(p: Path) -> bool:
    return p.is_file() and is_image_name(p.name)


def is_archive_file(p: Path) -> bool:
    return p.is_file() and p.suffix.lower() in ARCHIVE_EXTS


def is_pdf_file(p: Path) -> bool:
    return p.is_file() and p.suffix.lower() in PDF_EXTS


def is_paged_document(p: Path) -> bool:
    return p.is_dir() or is_archive_file(p) or is_pdf_file(p)


def document_format(p: Path) -> str:
    if p.is_dir():
        return "FOLDER"
    return p.suffix.lstrip(".").upper()


def list_images_in_dir(dir_path: Path) -> list[Path]:
    try:
        imgs = [p for p in dir_path.iterdir() if is_image_file(p)]
    except Exception as exc:
        logger.warning("Failed to list images in directory %s: %s", dir_path, exc)
        return []
    # Sort in a predictable way (supports 001.jpg, 1.jpg, etc.)
    return sorted(imgs, key=lambda p: p.name.lower())


def _zip_image_names(archive_path: Path) -> list[str]:
    with zipfile.ZipFile(archive_path) as zf:
        return [
            info.filename
            for info in zf.infolist()
            if not info.is_dir() and is_image_name(info.filename)
        ]


def list_images_in_archive(archive_path: Path) -> list[str]:
    """
    Image entry names in reading order. Raises UnreadableDocument when the
    archive cannot be opened at all.
    """
    suffix = archive_path.suffix.lower()
    try:
        if suffix in ZIP_EXTS:
            names = _zip_image_names(archive_path)
        elif suffix in RAR_EXTS:
            names = _rar_image_names(archive_path)
        else:
            names = []
    except (zipfile.BadZipFile, OSError) as exc:
        logger.warning("Failed to list archive images from %s: %s", archive_path, exc)
        raise UnreadableDocument(str(exc)) from exc
    return sorted(names, key=lambda n: n.lower())


def _rar_image_names(archive_path: Path) -> list[str]:
    # Plenty of .cbr files in the wild are really ZIP archives.
    if zipfile.is_zipfile(archive_path):
        return _zip_image_names(archive_path)
    if rarfile is None:
        raise UnreadableDocument("RAR support is not installed")
    try:
        with rarfile.RarFile(archive_path) as rf:
            return [
                info.filename
                for info in rf.infolist()
                if not info.is_dir() and is_image_name(info.filename)
            ]
    except rarfile.Error as exc:
        raise UnreadableDocument(str(exc)) from exc


def read_archive_image(archive_path: Path, filename: str) -> bytes | None:
    suffix = archive_path.suffix.lower()
    try:
        if suffix in ZIP_EXTS or (suffix in RAR_EXTS and zipfile.is_zipfile(archive_path)):
            with zipfile.ZipFile(archive_path) as zf:
                return zf.read(filename)
        if suffix in RAR_EXTS and rarfile is not None:
            with rarfile.RarFile(archive_path) as rf:
                return rf.read(filename)
    except Exception as exc:
        logger.warning(
            "Failed to read archive image %s from %s: %s", filename, archive_path, exc
        )
        return None
    return None


def get_pdf_page_count(pdf_path: Path) -> int:
    if fitz is not None:
        try:
            with fitz.open(pdf_path) as doc:
                return doc.page_count
        except Exception:
            return 0
    if PdfReader is None:
        return 0
    try:
        reader = PdfReader(str(pdf_path))
        if getattr(reader, "is_encrypted", False):
            try:
                reader.decrypt("")
            except Exception:
                return 0
        return len(reader.pages)
    except Exception:
        return 0


def render_pdf_page(pdf_path: Path, page: int, dpi: int) -> bytes | None:
    if fitz is None:
        return None
    if page < 1:
        return None
    try:
        with fitz.open(pdf_path) as doc:
            if page > doc.page_count:
                return None
            p = doc.load_page(page - 1)
            zoom = dpi / 72.0
            mat = fitz.Matrix(zoom, zoom)
            pix = p.get_pixmap(matrix=mat, alpha=False)
            return pix.tobytes("png")
    except Exception as exc:
        logger.warning("Failed to render page %s of %s: %s", page, pdf_path, exc)
        return None


def clamp_dpi(dpi: int) -> int:
    return max(MIN_DPI, min(MAX_DPI, dpi))


def page_count(doc_path: Path) -> int:
    if doc_path.is_dir():
        return len(list_images_in_dir(doc_path))
    if is_archive_file(doc_path):
        return len(list_images_in_archive(doc_path))
    if is_pdf_file(doc_path):
        return get_pdf_page_count(doc_path)
    return 0


def read_page_image(doc_path: Path, page: int) -> tuple[bytes, str] | None:
    """
    Bytes and media type of the 1-based `page` of an image folder or archive,
    or None when the document has no such page.
    """
    if page < 1:
        return None
    if doc_path.is_dir():
        images = list_images_in_dir(doc_path)
        if page > len(images):
            return None
        image = images[page - 1]
        return image.read_bytes(), mimetypes.guess_type(image.name)[0] or "application/octet-stream"
    names = list_images_in_archive(doc_path)
    if page > len(names):
        return None
    name = names[page - 1]
    data = read_archive_image(doc_path, name)
    if data is None:
        raise UnreadableDocument(f"Could not extract {name}")
    return data, mimetypes.guess_type(name)[0] or "application/octet-stream"

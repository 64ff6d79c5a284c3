import logging
from pathlib import Path

from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse, Response

from .config import PDF_CACHE_DIR, get_comics_dir
from .library import (
    UnreadableDocument,
    clamp_dpi,
    document_format,
    is_archive_file,
    is_paged_document,
    is_pdf_file,
    page_count,
    read_page_image,
    render_pdf_page,
)

app = FastAPI(title="PageStream")
logger = logging.getLogger(__name__)


@app.get("/health")
def health():
    return {"status": "ok"}


def _resolve_document(path: str) -> Path:
    if not path:
        raise HTTPException(status_code=400, detail="File path is required")
    root = get_comics_dir()
    doc_path = (root / path.lstrip("/\\")).resolve()
    if doc_path != root and root not in doc_path.parents:
        raise HTTPException(status_code=403, detail="Forbidden")
    if not doc_path.exists():
        raise HTTPException(status_code=404, detail="File not found")
    if not is_paged_document(doc_path):
        raise HTTPException(status_code=400, detail="Not a supported document")
    return doc_path


@app.get("/api/comic-info")
def comic_info(path: str = ""):
    doc_path = _resolve_document(path)
    try:
        pages = page_count(doc_path)
    except UnreadableDocument as exc:
        raise HTTPException(status_code=422, detail=f"Archive file is corrupted or invalid: {exc}")
    if pages == 0:
        raise HTTPException(status_code=422, detail="Document has no readable pages")
    logger.info("Comic info for %s: %s pages", doc_path, pages)
    return {"pages": pages, "format": document_format(doc_path)}


@app.get("/comic-preview")
def comic_preview(path: str = "", page: int = 1):
    doc_path = _resolve_document(path)
    if not (doc_path.is_dir() or is_archive_file(doc_path)):
        raise HTTPException(status_code=400, detail="Not a supported archive")
    try:
        found = read_page_image(doc_path, page)
    except UnreadableDocument as exc:
        raise HTTPException(status_code=422, detail=f"Archive file is corrupted or invalid: {exc}")
    if found is None:
        raise HTTPException(status_code=404, detail=f"Page not found: {page}")
    data, media_type = found
    return Response(content=data, media_type=media_type)


@app.get("/pdf-page")
def pdf_page(path: str = "", page: int = 1, dpi: int = 250):
    doc_path = _resolve_document(path)
    if not is_pdf_file(doc_path):
        raise HTTPException(status_code=400, detail="Not a PDF")
    total = page_count(doc_path)
    if total == 0:
        raise HTTPException(status_code=422, detail="PDF has no readable pages")
    if page < 1 or page > total:
        raise HTTPException(status_code=404, detail=f"Page not found: {page}")

    safe_dpi = clamp_dpi(dpi)
    cache_dir = (PDF_CACHE_DIR / doc_path.relative_to(get_comics_dir())).resolve()
    cache_dir.mkdir(parents=True, exist_ok=True)
    cache_file = cache_dir / f"p{page}-d{safe_dpi}.png"

    if not cache_file.exists():
        data = render_pdf_page(doc_path, page, safe_dpi)
        if data is None:
            logger.warning("Could not render page %s of %s", page, doc_path)
            raise HTTPException(status_code=500, detail=f"Could not render page {page}")
        cache_file.write_bytes(data)

    return FileResponse(str(cache_file), media_type="image/png")

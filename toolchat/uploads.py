import base64
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from pypdf import PdfReader
from pypdf.errors import PdfReadError


logger = logging.getLogger("uvicorn.error")

IMAGE_MIMES = {"image/png", "image/jpeg", "image/webp", "image/gif"}
ALLOWED_MIMES = IMAGE_MIMES | {"application/pdf"}
PDF_EXCERPT_CHARS = 4000


@dataclass
class ResolvedAttachment:
    """An upload prepared for one turn."""

    kind: str  # "image" or "pdf"
    name: str
    mime: str
    url: str
    data_url: Optional[str] = None
    text_excerpt: str = ""

    @property
    def is_image(self) -> bool:
        return self.kind == "image"

    def reference_text(self) -> str:
        if self.is_image:
            return f"[Attached image: {self.name}]"
        if self.text_excerpt:
            return f"[Attached file: {self.name}]\n{self.text_excerpt}"
        return f"[Attached file: {self.name}]"


def pdf_excerpt(path: Path, max_chars: int = PDF_EXCERPT_CHARS) -> str:
    try:
        reader = PdfReader(str(path))
        parts: List[str] = []
        for page in reader.pages[:6]:
            text = page.extract_text() or ""
            if text:
                parts.append(text)
            if sum(len(p) for p in parts) > max_chars:
                break
        return "\n".join(parts)[:max_chars]
    except (PdfReadError, OSError, ValueError) as exc:
        logger.warning("Could not read PDF %s: %s", path, exc)
        return ""


def data_url_from_file(path: Path, mime: str) -> str:
    data = path.read_bytes()
    return f"data:{mime};base64,{base64.b64encode(data).decode('utf-8')}"


def upload_url(upload_id: int) -> str:
    return f"/api/uploads/{upload_id}"


def resolve_attachment(record: Dict[str, Any]) -> ResolvedAttachment:
    path = Path(record["storage_path"])
    mime = record["mime"]
    name = record["original_name"]
    url = upload_url(record["id"])
    if mime in IMAGE_MIMES:
        return ResolvedAttachment(kind="image", name=name, mime=mime, url=url, data_url=data_url_from_file(path, mime))
    return ResolvedAttachment(kind="pdf", name=name, mime=mime, url=url, text_excerpt=pdf_excerpt(path))

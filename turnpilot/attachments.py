import base64
import binascii
import io
import logging
from typing import Any, Dict, List, Optional, Union

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from .schemas import FileAttachment, ImageAttachment

logger = logging.getLogger("uvicorn.error")

TEXT_MIME_PREFIXES = ("text/",)
TEXT_MIME_TYPES = {"application/json", "application/xml", "application/javascript", "application/x-yaml"}


def image_data_url(image: ImageAttachment) -> str:
    return f"data:{image.mime_type};base64,{image.base64}"


def _decode(file: FileAttachment) -> bytes:
    try:
        return base64.b64decode(file.base64, validate=False)
    except (binascii.Error, ValueError):
        logger.warning("Attachment %s is not valid base64", file.name)
        return b""


def pdf_text(data: bytes, max_chars: int = 20000) -> str:
    try:
        reader = PdfReader(io.BytesIO(data))
    except PdfReadError as exc:
        logger.warning("Could not open PDF attachment: %s", exc)
        return ""
    parts: List[str] = []
    for page in reader.pages:
        text = page.extract_text() or ""
        if text:
            parts.append(text)
        if sum(len(p) for p in parts) > max_chars:
            break
    return "\n".join(parts)[:max_chars]


def file_text(file: FileAttachment, max_chars: int = 20000) -> str:
    """Readable text for an attached file, or a short description when it has none."""
    data = _decode(file)
    mime = (file.mime_type or "").lower()
    text = ""
    if mime == "application/pdf" or file.name.lower().endswith(".pdf"):
        text = pdf_text(data, max_chars=max_chars)
    elif mime.startswith(TEXT_MIME_PREFIXES) or mime in TEXT_MIME_TYPES:
        text = data.decode("utf-8", errors="replace")[:max_chars]
    if not text.strip():
        return f"[Attached file: {file.name} ({file.mime_type}), no readable text]"
    return f"[Attached file: {file.name}]\n{text}"


def build_user_content(
    text: str,
    images: Optional[List[ImageAttachment]] = None,
    file: Optional[FileAttachment] = None,
) -> Union[str, List[Dict[str, Any]]]:
    """Chat-completions content for one user message: plain text or a list of parts."""
    parts: List[Dict[str, Any]] = []
    if file is not None:
        parts.append({"type": "text", "text": file_text(file)})
    for image in images or []:
        parts.append({"type": "image_url", "image_url": {"url": image_data_url(image)}})
    if not parts:
        return text
    if text:
        parts.append({"type": "text", "text": text})
    return parts

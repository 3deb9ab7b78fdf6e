"""
Format Extraction for Case Documents

Turns an uploaded byte buffer into plain text plus ordered page segments.
Dispatch is by file extension:

- pdf: page-by-page text with PyMuPDF (encrypted files raise EncryptedDocumentError)
- docx: paragraph text with python-docx
- txt/md/rtf/csv: decoded verbatim
- html/htm: tag-stripped with BeautifulSoup
- eml/msg: header block above the body (plain text preferred, stripped HTML otherwise)
- images: vision-model OCR through the LLM client
- zip is not handled here; the ingest pipeline expands archives into child jobs

Anything else raises UnsupportedFormatError.
"""

import base64
import email
import io
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from datetime import datetime
from email import policy
from typing import Optional

from .case_patterns import IMAGE_EXTENSIONS, LABELS
from .errors import EncryptedDocumentError, UnsupportedFormatError

logger = logging.getLogger(__name__)

_EXTENSION_RE = re.compile(r"\.([a-z0-9]+)$")
_PASSWORD_ERROR_RE = re.compile(r"password|encrypt", re.IGNORECASE)


def file_extension(filename: str) -> str:
    """Lowercase extension without the dot, or '' when there is none."""
    match = _EXTENSION_RE.search((filename or "").lower())
    return match.group(1) if match else ""


def decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def html_to_text(html: str) -> str:
    """Readable text from HTML: scripts/styles dropped, blank runs collapsed."""
    from bs4 import BeautifulSoup

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    text = soup.get_text("\n")
    lines = [line.strip() for line in text.splitlines()]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()


@dataclass
class PageText:
    """Text of one page; page_number is None for unpaginated formats."""
    page_number: Optional[int]
    text: str

    def to_dict(self) -> dict:
        return {"page_number": self.page_number, "text": self.text}

    @classmethod
    def from_dict(cls, data: dict) -> "PageText":
        return cls(page_number=data.get("page_number"), text=data.get("text", ""))


@dataclass
class ExtractedDocument:
    """Full text plus the ordered page segments that cover it."""
    text: str
    pages: list[PageText]

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "pages": [p.to_dict() for p in self.pages],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExtractedDocument":
        return cls(
            text=data.get("text", ""),
            pages=[PageText.from_dict(p) for p in data.get("pages", [])],
        )

    @classmethod
    def single_page(cls, text: str) -> "ExtractedDocument":
        return cls(text=text, pages=[PageText(page_number=None, text=text)])


def _header_block(headers: list[tuple[str, Optional[str]]], body: str) -> str:
    lines = [f"{name}: {value}" for name, value in headers if value]
    return "\n\n".join(part for part in ["\n".join(lines), body] if part)


class FormatExtractor:
    """
    Extract text from uploaded files.

    The LLM client is only needed for images; without one, image uploads
    fail with a RuntimeError that the job records as its error.
    """

    def __init__(self, llm_client=None, vision_model: str = "gpt-4o-mini", ocr_timeout: float = 45.0):
        self.llm_client = llm_client
        self.vision_model = vision_model
        self.ocr_timeout = ocr_timeout

        self._handlers = {
            "pdf": self._extract_pdf,
            "docx": self._extract_docx,
            "txt": self._extract_plain,
            "md": self._extract_plain,
            "rtf": self._extract_plain,
            "csv": self._extract_plain,
            "html": self._extract_html,
            "htm": self._extract_html,
            "eml": self._extract_eml,
            "msg": self._extract_msg,
        }

    def supports(self, filename: str) -> bool:
        ext = file_extension(filename)
        return ext in self._handlers or ext in IMAGE_EXTENSIONS

    def extract(
        self,
        data: bytes,
        filename: str,
        mime_type: Optional[str] = None,
        source_url: Optional[str] = None,
    ) -> ExtractedDocument:
        """
        Extract text from a file's bytes.

        Args:
            data: Raw file content
            filename: Original filename; its extension selects the extractor
            mime_type: Content type recorded at upload (used for image OCR)
            source_url: Byte-store URL, passed to the vision model for images

        Returns:
            ExtractedDocument with text and page segments

        Raises:
            UnsupportedFormatError: No extractor for the extension
            EncryptedDocumentError: PDF requires a password
        """
        ext = file_extension(filename)
        handler = self._handlers.get(ext)
        if handler is not None:
            result = handler(data)
        elif ext in IMAGE_EXTENSIONS:
            result = self._extract_image(data, ext, mime_type, source_url)
        else:
            raise UnsupportedFormatError(ext)

        logger.info(
            f"Extracted {len(result.text)} chars in {len(result.pages)} page(s) from {filename}"
        )
        return result

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _extract_pdf(self, data: bytes) -> ExtractedDocument:
        import fitz  # PyMuPDF

        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except Exception as e:
            if _PASSWORD_ERROR_RE.search(str(e)):
                raise EncryptedDocumentError() from e
            raise

        with doc:
            if doc.needs_pass:
                raise EncryptedDocumentError()

            pages = []
            for page_num in range(len(doc)):
                page_text = doc[page_num].get_text()
                pages.append(PageText(page_number=page_num + 1, text=page_text))

        text = "\n\n".join(p.text for p in pages)
        return ExtractedDocument(text=text, pages=pages)

    def _extract_docx(self, data: bytes) -> ExtractedDocument:
        from docx import Document

        doc = Document(io.BytesIO(data))
        text = "\n".join(p.text for p in doc.paragraphs)
        return ExtractedDocument.single_page(text)

    def _extract_plain(self, data: bytes) -> ExtractedDocument:
        return ExtractedDocument.single_page(decode_text(data))

    def _extract_html(self, data: bytes) -> ExtractedDocument:
        return ExtractedDocument.single_page(html_to_text(decode_text(data)))

    def _extract_eml(self, data: bytes) -> ExtractedDocument:
        message = email.message_from_bytes(data, policy=policy.default)

        body = ""
        plain = message.get_body(preferencelist=("plain",))
        if plain is not None:
            body = plain.get_content()
        else:
            html = message.get_body(preferencelist=("html",))
            if html is not None:
                body = html_to_text(html.get_content())

        date_iso = None
        date_header = message["Date"]
        if date_header is not None:
            parsed = getattr(date_header, "datetime", None)
            date_iso = parsed.isoformat() if parsed else str(date_header)

        text = _header_block(
            [
                ("Subject", message["Subject"]),
                ("From", message["From"]),
                ("To", message["To"]),
                ("Date", date_iso),
            ],
            body.strip(),
        )
        return ExtractedDocument.single_page(text)

    def _extract_msg(self, data: bytes) -> ExtractedDocument:
        import extract_msg

        # extract-msg reads from a path; the OLE file stays open until close()
        with tempfile.NamedTemporaryFile(suffix=".msg", delete=False) as tmp:
            tmp.write(data)
            tmp_path = tmp.name

        msg = None
        try:
            msg = extract_msg.Message(tmp_path)
            body = msg.body or ""
            if not body.strip() and msg.htmlBody:
                html = msg.htmlBody
                if isinstance(html, bytes):
                    html = decode_text(html)
                body = html_to_text(html)

            date_value = msg.date
            if isinstance(date_value, datetime):
                date_value = date_value.isoformat()

            text = _header_block(
                [
                    ("Subject", msg.subject),
                    ("From", msg.sender),
                    ("FromEmail", getattr(msg, "sender_email", None)),
                    ("To", msg.to),
                    ("Date", date_value),
                ],
                body.strip(),
            )
        finally:
            if msg is not None:
                msg.close()
            os.unlink(tmp_path)

        return ExtractedDocument.single_page(text)

    def _extract_image(
        self,
        data: bytes,
        ext: str,
        mime_type: Optional[str],
        source_url: Optional[str],
    ) -> ExtractedDocument:
        if self.llm_client is None:
            raise RuntimeError("Image extraction requires an LLM client")

        if source_url and source_url.startswith(("http://", "https://")):
            image_url = source_url
        else:
            # Provider cannot reach local URLs; inline the bytes instead
            content_type = mime_type or f"image/{'jpeg' if ext == 'jpg' else ext}"
            encoded = base64.b64encode(data).decode("ascii")
            image_url = f"data:{content_type};base64,{encoded}"

        text = self.llm_client.describe_image(
            image_url,
            instruction=LABELS["ocr_instruction"],
            model=self.vision_model,
            timeout=self.ocr_timeout,
        )
        return ExtractedDocument.single_page(text)

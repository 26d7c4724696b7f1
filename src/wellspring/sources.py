"""Type-specific acquisition of knowledge sources."""

from __future__ import annotations

import asyncio
import io
import logging
import mimetypes
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence
from urllib.parse import urldefrag, urljoin, urlparse

import httpx

try:  # pragma: no cover - optional dependency
    from pypdf import PdfReader
except Exception:  # pragma: no cover
    PdfReader = None

try:  # pragma: no cover - optional dependency
    from docx import Document as DocxDocument
except Exception:  # pragma: no cover
    DocxDocument = None

try:  # pragma: no cover - optional dependency
    from bs4 import BeautifulSoup
except Exception:  # pragma: no cover
    BeautifulSoup = None

from .config import Settings
from .errors import EmptyInput, FetchError, FetchTimeout, PayloadTooLarge, UnsupportedFormat
from .models import AcquisitionResult, AudioPayload, KnowledgeKind

logger = logging.getLogger(__name__)

_TITLE_LIMIT = 160
_USER_AGENT = "wellspring-ingest/0.1"


@dataclass(slots=True)
class ExtractedDocument:
    text: str
    title: str | None
    content_type: str | None


@dataclass(slots=True)
class _FetchedPage:
    url: str
    document: ExtractedDocument
    links: list[str]


class SourceAdapter:
    """Turn raw user input into an ``AcquisitionResult`` for each source kind."""

    def __init__(
        self,
        *,
        max_file_bytes: int,
        max_voice_bytes: int,
        allowed_extensions: Sequence[str],
        url_timeout: float = 10.0,
        crawl_depth: int = 0,
        max_pages: int = 10,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._max_file_bytes = max_file_bytes
        self._max_voice_bytes = max_voice_bytes
        self._allowed_extensions = frozenset(ext.lower() for ext in allowed_extensions)
        self._url_timeout = url_timeout
        self._crawl_depth = max(0, crawl_depth)
        self._max_pages = max(1, max_pages)
        self._transport = transport

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "SourceAdapter":
        return cls(
            max_file_bytes=settings.max_file_bytes,
            max_voice_bytes=settings.max_voice_bytes,
            allowed_extensions=settings.allowed_extensions,
            url_timeout=settings.url_timeout_seconds,
            crawl_depth=settings.url_crawl_depth,
            max_pages=settings.url_max_pages,
            transport=transport,
        )

    def validate(self, kind: KnowledgeKind, raw_input: Any, *, name: str | None = None) -> None:
        """Run the cheap, synchronous input checks for ``kind``.

        Raises the same permanent errors ``acquire`` would, without touching
        the network or parsing documents.
        """

        if kind is KnowledgeKind.FILE:
            data = _as_bytes(raw_input)
            if not data:
                raise EmptyInput("Uploaded file is empty")
            if len(data) > self._max_file_bytes:
                raise PayloadTooLarge(
                    f"File size {len(data)} bytes exceeds the maximum of {self._max_file_bytes} bytes"
                )
            suffix = Path(name or "").suffix.lower()
            if suffix not in self._allowed_extensions:
                allowed = ", ".join(sorted(self._allowed_extensions))
                raise UnsupportedFormat(f"Unsupported file type '{suffix or name}'; allowed: {allowed}")
        elif kind is KnowledgeKind.URL:
            url = str(raw_input or "").strip()
            if not url:
                raise EmptyInput("URL is required")
            if urlparse(url).scheme not in {"http", "https"}:
                raise UnsupportedFormat("Only http and https URLs are supported")
        elif kind is KnowledgeKind.TEXT:
            if not str(raw_input or "").strip():
                raise EmptyInput("Text snippet is empty")
        elif kind is KnowledgeKind.VOICE:
            audio = raw_input.data if isinstance(raw_input, AudioPayload) else _as_bytes(raw_input)
            if not audio:
                raise EmptyInput("Voice recording is empty")
            if len(audio) > self._max_voice_bytes:
                raise PayloadTooLarge(
                    f"Recording size {len(audio)} bytes exceeds the maximum of {self._max_voice_bytes} bytes"
                )

    async def acquire(self, kind: KnowledgeKind, raw_input: Any, *, name: str | None = None) -> AcquisitionResult:
        kind = KnowledgeKind(kind)
        self.validate(kind, raw_input, name=name)
        if kind is KnowledgeKind.FILE:
            return await self._acquire_file(_as_bytes(raw_input), name or "document")
        if kind is KnowledgeKind.URL:
            return await self._acquire_url(str(raw_input).strip())
        if kind is KnowledgeKind.TEXT:
            text = str(raw_input)
            return AcquisitionResult(
                kind=kind,
                text=text,
                title=_derive_plain_title(text),
                content_type="text/plain",
                size_bytes=len(text.encode("utf-8")),
            )
        audio = raw_input.data if isinstance(raw_input, AudioPayload) else _as_bytes(raw_input)
        content_type = raw_input.content_type if isinstance(raw_input, AudioPayload) else None
        return AcquisitionResult(
            kind=kind,
            audio=audio,
            content_type=content_type or "audio/webm",
            size_bytes=len(audio),
        )

    async def _acquire_file(self, data: bytes, filename: str) -> AcquisitionResult:
        extracted = await asyncio.to_thread(_extract_document, filename, data, None)
        if not extracted.text.strip():
            raise EmptyInput(f"No textual content could be extracted from {filename}")
        return AcquisitionResult(
            kind=KnowledgeKind.FILE,
            text=extracted.text,
            title=extracted.title,
            content_type=extracted.content_type,
            size_bytes=len(data),
        )

    async def _acquire_url(self, url: str) -> AcquisitionResult:
        root_host = urlparse(url).netloc
        seen: set[str] = {urldefrag(url)[0]}
        frontier: deque[tuple[str, int]] = deque([(url, 0)])
        pages: list[_FetchedPage] = []
        total_bytes = 0

        async with httpx.AsyncClient(
            timeout=self._url_timeout,
            follow_redirects=True,
            headers={"User-Agent": _USER_AGENT},
            transport=self._transport,
        ) as client:
            while frontier and len(pages) < self._max_pages:
                target, depth = frontier.popleft()
                try:
                    page, size = await self._fetch_page(client, target)
                except (FetchError, FetchTimeout, UnsupportedFormat):
                    if not pages:
                        raise
                    logger.warning("source.crawl.skip url=%s", target, exc_info=True)
                    continue
                pages.append(page)
                total_bytes += size
                if depth >= self._crawl_depth:
                    continue
                for link in page.links:
                    normalized = urldefrag(link)[0]
                    if normalized in seen or urlparse(normalized).netloc != root_host:
                        continue
                    seen.add(normalized)
                    frontier.append((normalized, depth + 1))

        texts = [page.document.text.strip() for page in pages if page.document.text.strip()]
        if not texts:
            raise EmptyInput(f"URL {url} returned no textual content")
        first = pages[0].document
        logger.info("source.url.fetched url=%s pages=%s bytes=%s", url, len(pages), total_bytes)
        return AcquisitionResult(
            kind=KnowledgeKind.URL,
            text="\n\n".join(texts),
            title=first.title,
            content_type=first.content_type,
            size_bytes=total_bytes,
            pages=len(pages),
        )

    async def _fetch_page(self, client: httpx.AsyncClient, url: str) -> tuple[_FetchedPage, int]:
        try:
            response = await client.get(url)
        except httpx.TimeoutException as exc:
            raise FetchTimeout(f"Timed out fetching {url} after {self._url_timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"Failed to download {url}: {exc}") from exc
        if not response.is_success:
            raise FetchError(f"Failed to download {url} (status {response.status_code})")

        content_type = response.headers.get("content-type")
        if content_type:
            content_type = content_type.split(";", 1)[0].strip()
        filename = Path(urlparse(url).path).name or "index"
        if not Path(filename).suffix and content_type:
            extension = mimetypes.guess_extension(content_type)
            if extension:
                filename = f"{filename}{extension}"

        data = response.content
        document = await asyncio.to_thread(_extract_document, filename, data, content_type)
        links = _extract_links(data, str(response.url)) if _is_html(filename, content_type) else []
        return _FetchedPage(url=url, document=document, links=links), len(data)


def _as_bytes(raw_input: Any) -> bytes:
    if raw_input is None:
        return b""
    if isinstance(raw_input, (bytes, bytearray, memoryview)):
        return bytes(raw_input)
    if isinstance(raw_input, str):
        return raw_input.encode("utf-8")
    raise UnsupportedFormat(f"Expected raw bytes, got {type(raw_input).__name__}")


def _is_html(filename: str, content_type: str | None) -> bool:
    suffix = Path(filename).suffix.lower()
    return suffix in {".html", ".htm"} or bool(content_type and "html" in content_type)


def _require_beautifulsoup():
    if BeautifulSoup is None:
        raise UnsupportedFormat("HTML support requires the 'beautifulsoup4' package")
    return BeautifulSoup


def _extract_links(data: bytes, base_url: str) -> list[str]:
    soup = _require_beautifulsoup()(data, "html.parser")
    links: list[str] = []
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("mailto:", "javascript:", "tel:")):
            continue
        absolute = urljoin(base_url, href)
        if urlparse(absolute).scheme in {"http", "https"}:
            links.append(absolute)
    return links


def _extract_document(filename: str, data: bytes, content_type: str | None) -> ExtractedDocument:
    suffix = Path(filename).suffix.lower()
    guessed_type = content_type or mimetypes.guess_type(filename)[0]

    if suffix in {".md", ".markdown"}:
        text = data.decode("utf-8", errors="ignore")
        return ExtractedDocument(
            text=text,
            title=_derive_markdown_title(text),
            content_type=guessed_type or "text/markdown",
        )

    if suffix == ".pdf" or guessed_type == "application/pdf":
        if PdfReader is None:
            raise UnsupportedFormat("PDF support requires the 'pypdf' package")
        try:
            reader = PdfReader(io.BytesIO(data))
            texts = [page.extract_text() or "" for page in reader.pages]
            metadata = getattr(reader, "metadata", None)
            metadata_title = getattr(metadata, "title", None) if metadata else None
        except Exception as exc:
            raise UnsupportedFormat(f"Failed to extract text from PDF: {exc}") from exc
        combined = "\n\n".join(filter(None, texts))
        return ExtractedDocument(
            text=combined,
            title=metadata_title or _derive_plain_title(combined),
            content_type="application/pdf",
        )

    if suffix == ".docx":
        if DocxDocument is None:
            raise UnsupportedFormat("DOCX support requires the 'python-docx' package")
        try:
            document = DocxDocument(io.BytesIO(data))
        except Exception as exc:
            raise UnsupportedFormat(f"Failed to extract text from DOCX: {exc}") from exc
        paragraphs = [paragraph.text.strip() for paragraph in document.paragraphs if paragraph.text.strip()]
        text = "\n\n".join(paragraphs)
        core_title = (document.core_properties.title or "").strip() or None
        return ExtractedDocument(
            text=text,
            title=core_title or (paragraphs[0][:_TITLE_LIMIT] if paragraphs else None),
            content_type="application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        )

    if _is_html(filename, guessed_type):
        soup = _require_beautifulsoup()(data, "html.parser")
        for tag in soup(["script", "style", "noscript"]):
            tag.extract()
        title = soup.title.string.strip() if soup.title and soup.title.string else None
        lines = [line.strip() for line in soup.get_text(separator="\n").splitlines()]
        text = "\n".join(line for line in lines if line)
        return ExtractedDocument(
            text=text,
            title=title or _derive_plain_title(text),
            content_type="text/html",
        )

    # Fallback: treat as UTF-8 text
    text = data.decode("utf-8", errors="ignore")
    return ExtractedDocument(
        text=text,
        title=_derive_plain_title(text),
        content_type=guessed_type or "text/plain",
    )


def _derive_markdown_title(text: str) -> str | None:
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        return stripped.lstrip("#").strip()[:_TITLE_LIMIT] or None
    return None


def _derive_plain_title(text: str) -> str | None:
    for line in text.splitlines():
        stripped = line.strip()
        if stripped:
            return stripped[:_TITLE_LIMIT]
    return None


__all__ = ["SourceAdapter", "ExtractedDocument"]

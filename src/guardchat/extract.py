"""URL detection and page-text extraction for enriching a user turn."""

from __future__ import annotations

import logging
import re
from datetime import datetime

import httpx
from bs4 import BeautifulSoup

from guardchat.errors import ExtractionError

logger = logging.getLogger(__name__)

_URL_RE = re.compile(r"https?://[^\s<>\"{}|\\^`\[\]]+")
_TRAILING_PUNCTUATION = ".,;:!?)"
_NOISE_TAGS = ("script", "style", "noscript", "nav", "footer", "header", "aside", "form")


def extract_urls(text: str) -> list[str]:
    """Return the http(s) URLs in *text*, in order, without trailing punctuation."""
    return [match.rstrip(_TRAILING_PUNCTUATION) for match in _URL_RE.findall(text or "")]


def html_to_text(html: str) -> tuple[str, str]:
    """Return ``(title, visible_text)`` for an HTML document."""
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""
    for tag in soup(_NOISE_TAGS):
        tag.decompose()
    root = soup.find("main") or soup.find("article") or soup.body or soup
    lines = (" ".join(line.split()) for line in root.get_text("\n").splitlines())
    return title, "\n".join(line for line in lines if line)


class HttpUrlTextExtractor:
    """Fetches a page over HTTP and formats its text for the model context."""

    def __init__(
        self,
        *,
        timeout: float = 15.0,
        max_bytes: int = 5 * 1024 * 1024,
        user_agent: str = "AQUILA-Bot/1.0 (Enterprise Assistant)",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.max_bytes = max_bytes
        self._http = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": user_agent},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def extract(self, url: str, max_chars: int) -> str:
        try:
            response = await self._http.get(url)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise ExtractionError(f"request failed: {exc}") from exc
        if response.status_code != 200:
            raise ExtractionError(f"HTTP {response.status_code}")
        if len(response.content) > self.max_bytes:
            raise ExtractionError(f"content exceeds {self.max_bytes} bytes")

        content_type = response.headers.get("content-type", "")
        if "html" in content_type or not content_type:
            title, text = html_to_text(response.text)
        elif content_type.startswith("text/"):
            title, text = "", response.text.strip()
        else:
            raise ExtractionError(f"unsupported content type {content_type!r}")

        if not text:
            raise ExtractionError("no readable text found")

        header = [f"=== Contenido de: {url} ==="]
        if title:
            header.append(f"Título: {title}")
        header.append(f"Extraído: {datetime.now():%Y-%m-%d %H:%M} (método: http)")

        if max_chars > 0 and len(text) > max_chars:
            text = text[:max_chars] + "\n\n[... contenido truncado ...]"
        logger.debug("Extracted %d chars from %s", len(text), url)
        return "\n".join(header) + "\n\n" + text

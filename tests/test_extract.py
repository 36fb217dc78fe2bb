"""Tests for URL detection and HTTP page-text extraction."""

import httpx
import pytest

from guardchat.errors import ExtractionError
from guardchat.extract import HttpUrlTextExtractor, extract_urls, html_to_text

PAGE = """\
<html>
  <head><title> Politica de viajes </title><style>body { color: red; }</style></head>
  <body>
    <nav>Inicio | Contacto</nav>
    <main>
      <h1>Viajes</h1>
      <p>Los viajes   se aprueban
         con 10 dias de antelacion.</p>
      <script>var tracking = 1;</script>
    </main>
    <footer>Copyright</footer>
  </body>
</html>
"""


def _extractor(handler) -> HttpUrlTextExtractor:
    return HttpUrlTextExtractor(transport=httpx.MockTransport(handler))


class TestExtractUrls:
    def test_finds_urls_in_order(self):
        text = "ver https://a.example.com/x y http://b.example.com."
        assert extract_urls(text) == ["https://a.example.com/x", "http://b.example.com"]

    def test_trailing_punctuation_trimmed(self):
        assert extract_urls("(ver https://a.example.com/doc?id=1).") == ["https://a.example.com/doc?id=1"]

    def test_no_urls(self):
        assert extract_urls("nada que ver") == []
        assert extract_urls("") == []


class TestHtmlToText:
    def test_drops_noise_and_collapses_whitespace(self):
        title, text = html_to_text(PAGE)
        assert title == "Politica de viajes"
        assert "Viajes" in text
        assert "Los viajes se aprueban" in text
        assert "tracking" not in text
        assert "Contacto" not in text
        assert "Copyright" not in text
        assert "color" not in text


class TestHttpExtractor:
    @pytest.mark.asyncio
    async def test_formats_page(self):
        extractor = _extractor(
            lambda request: httpx.Response(200, text=PAGE, headers={"content-type": "text/html"})
        )
        result = await extractor.extract("https://intranet.example.com/viajes", 8000)
        lines = result.splitlines()
        assert lines[0] == "=== Contenido de: https://intranet.example.com/viajes ==="
        assert lines[1] == "Título: Politica de viajes"
        assert lines[2].startswith("Extraído: ")
        assert lines[2].endswith("(método: http)")
        assert "10 dias de antelacion." in result
        await extractor.aclose()

    @pytest.mark.asyncio
    async def test_truncates_to_budget(self):
        body = "<html><body><p>" + "a" * 500 + "</p></body></html>"
        extractor = _extractor(
            lambda request: httpx.Response(200, text=body, headers={"content-type": "text/html"})
        )
        result = await extractor.extract("https://example.com", 100)
        assert result.endswith("a" * 100 + "\n\n[... contenido truncado ...]")

    @pytest.mark.asyncio
    async def test_plain_text_passthrough(self):
        extractor = _extractor(
            lambda request: httpx.Response(200, text="  hola  ", headers={"content-type": "text/plain"})
        )
        result = await extractor.extract("https://example.com/a.txt", 100)
        assert result.endswith("\n\nhola")
        assert "Título" not in result

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        extractor = _extractor(lambda request: httpx.Response(404))
        with pytest.raises(ExtractionError, match="HTTP 404"):
            await extractor.extract("https://example.com/missing", 100)

    @pytest.mark.asyncio
    async def test_binary_content_rejected(self):
        extractor = _extractor(
            lambda request: httpx.Response(200, content=b"%PDF", headers={"content-type": "application/pdf"})
        )
        with pytest.raises(ExtractionError, match="unsupported"):
            await extractor.extract("https://example.com/a.pdf", 100)

    @pytest.mark.asyncio
    async def test_connection_failure_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ExtractionError, match="request failed"):
            await _extractor(handler).extract("https://example.com", 100)

    @pytest.mark.asyncio
    async def test_malformed_url_raises_extraction_error(self):
        calls = []
        extractor = _extractor(lambda request: calls.append(request) or httpx.Response(200))
        with pytest.raises(ExtractionError, match="request failed"):
            await extractor.extract("http://example.com:abc", 100)
        assert calls == []

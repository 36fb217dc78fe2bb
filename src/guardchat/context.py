"""Model context assembly: system prompt, knowledge, history and current turn."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from guardchat.errors import ExtractionError
from guardchat.extract import extract_urls
from guardchat.models import KnowledgeSnippet, Message
from guardchat.store.base import UrlTextExtractor

logger = logging.getLogger(__name__)


def format_knowledge(snippets: Sequence[KnowledgeSnippet]) -> str:
    """Render knowledge-base snippets as one system-message body."""
    parts = [
        "--- CONOCIMIENTO EMPRESARIAL ---",
        "Usa la siguiente informacion para responder preguntas sobre la empresa:",
        "",
    ]
    for snippet in snippets:
        parts.append(f"## {snippet.title} [{snippet.category or ''}]")
        parts.append(snippet.content)
        parts.append("")
    parts.append("--- FIN CONOCIMIENTO ---")
    return "\n".join(parts)


class ContextAssembler:
    """Builds the ordered message list sent to the model.

    Output order is fixed: the operating prompt, then the knowledge message
    when there are snippets, then prior history exactly as stored, then the
    current user turn.  URL enrichment only ever touches the returned
    current-turn message; history objects passed in are not modified.
    """

    def __init__(
        self,
        system_prompt: str,
        *,
        url_extractor: UrlTextExtractor | None = None,
        url_char_budget: int = 8000,
    ) -> None:
        self.system_prompt = system_prompt
        self.url_extractor = url_extractor
        self.url_char_budget = url_char_budget

    async def build(
        self,
        history: Sequence[Message],
        snippets: Sequence[KnowledgeSnippet],
        current_text: str,
    ) -> list[Message]:
        messages = [Message(role="system", content=self.system_prompt)]
        if snippets:
            messages.append(Message(role="system", content=format_knowledge(snippets)))
        messages.extend(history)
        messages.append(Message(role="user", content=await self.enrich(current_text)))
        return messages

    async def enrich(self, text: str) -> str:
        """Append extracted page text for every URL in *text*."""
        if self.url_extractor is None:
            return text
        urls = extract_urls(text)
        if not urls:
            return text

        parts = [text, "", "--- CONTENIDO EXTRAIDO DE URLs ---"]
        for url in urls:
            logger.info("Extracting content from URL: %s", url)
            try:
                extracted = await self.url_extractor.extract(url, self.url_char_budget)
            except ExtractionError as exc:
                logger.warning("Error extracting %s: %s", url, exc)
                parts.append(f"[Error extrayendo {url}: {exc}]")
                continue
            parts.append(extracted)
        parts.append("--- FIN CONTENIDO URLs ---")
        return "\n".join(parts)

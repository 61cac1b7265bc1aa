from __future__ import annotations

import re
import time
from typing import Awaitable, Callable

import httpx
from bs4 import BeautifulSoup

from contactscout.config import settings
from contactscout.models.contacts import ScrapedPage, domain_of
from contactscout.tools.base import (
    HealthTracker,
    PermanentProviderError,
    RetryPolicy,
    ServiceHealth,
    call_with_retry,
)

DOMAIN_TIMEOUT_OVERRIDES = {
    "x.com": 25.0,
    "twitter.com": 25.0,
    "linkedin.com": 25.0,
}

STRIP_TAGS = ("script", "style", "noscript", "svg", "iframe", "nav", "footer", "form")

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml", "text/plain")

# (html, final_url, status_code, content_type)
FetchResult = tuple[str, str, int, str]
Fetcher = Callable[[str, float], Awaitable[FetchResult]]


def normalize_text(text: str) -> str:
    text = text.replace("\xa0", " ")
    text = re.sub(r"\r\n?", "\n", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n\s*\n+", "\n\n", text)
    return text.strip()


def html_to_text(raw_html: str) -> tuple[str, str]:
    """Return ``(title, text)``; mailto addresses are appended to the text."""
    soup = BeautifulSoup(raw_html, "html.parser")
    title = normalize_text(soup.title.string) if soup.title and soup.title.string else ""

    mailtos: list[str] = []
    for anchor in soup.select('a[href^="mailto:"]'):
        address = anchor.get("href", "")[len("mailto:"):].split("?")[0].strip()
        if address and address not in mailtos:
            mailtos.append(address)

    for tag in soup(STRIP_TAGS):
        tag.decompose()
    text = normalize_text(soup.get_text("\n"))
    if mailtos:
        text = f"{text}\n\n" + "\n".join(f"Email: {m}" for m in mailtos)
    return title, text


def _truncate(text: str, max_chars: int) -> str:
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


class ContentScraper:
    """Fetches a page over HTTP and reduces it to readable text."""

    name = "content_scraping"

    def __init__(
        self,
        timeout_seconds: float | None = None,
        max_chars: int | None = None,
        user_agent: str | None = None,
        retry_policy: RetryPolicy | None = None,
        fetcher: Fetcher | None = None,
    ):
        self.timeout_seconds = timeout_seconds or settings.scrape_timeout_seconds
        self.max_chars = settings.scrape_max_chars if max_chars is None else max_chars
        self.user_agent = user_agent or settings.scrape_user_agent
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self._fetcher = fetcher or self._fetch_with_httpx
        self.health = HealthTracker(self.name)

    def timeout_for(self, url: str) -> float:
        return max(DOMAIN_TIMEOUT_OVERRIDES.get(domain_of(url), self.timeout_seconds), 1.0)

    async def _fetch_with_httpx(self, url: str, timeout_seconds: float) -> FetchResult:
        async with httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=True) as client:
            response = await client.get(url, headers={"User-Agent": self.user_agent})
            response.raise_for_status()
            content_type = response.headers.get("content-type", "text/html")
            return response.text, str(response.url), int(response.status_code), content_type

    async def scrape_content(self, url: str) -> ScrapedPage:
        if not url.startswith(("http://", "https://")):
            raise PermanentProviderError(f"Unsupported URL: {url}", provider=self.name)

        started = time.monotonic()
        html, final_url, status_code, content_type = await call_with_retry(
            lambda: self._fetcher(url, self.timeout_for(url)),
            provider=self.name,
            name="scrape",
            policy=self.retry_policy,
            health=self.health,
        )
        if not any(kind in content_type.lower() for kind in HTML_CONTENT_TYPES):
            raise PermanentProviderError(
                f"Unsupported content type {content_type} for {url}", provider=self.name
            )

        if "text/plain" in content_type.lower():
            title, text = "", normalize_text(html)
        else:
            title, text = html_to_text(html)
        return ScrapedPage(
            url=url,
            final_url=final_url,
            status_code=status_code,
            title=title,
            content=_truncate(text, self.max_chars),
            timing_ms=int((time.monotonic() - started) * 1000),
        )

    async def get_health(self) -> ServiceHealth:
        return self.health.snapshot()

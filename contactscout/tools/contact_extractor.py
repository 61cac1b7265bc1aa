"""Contact extraction from scraped pages.

The LLM path is used when enabled and configured. The rule-based path (email
addresses, bylines, profile links) runs when it is not, or when the LLM call
fails for a page.
"""
from __future__ import annotations

import re
from typing import Any, Sequence
from uuid import uuid4

from loguru import logger

from contactscout.llm_client import LLMClient, parse_json_array
from contactscout.models.contacts import (
    ExtractedContact,
    ExtractionMethod,
    ScrapedPage,
    SocialProfile,
    domain_of,
)
from contactscout.models.search import SearchOptions
from contactscout.services.prompt_store import render_prompt
from contactscout.tools.base import (
    HealthTracker,
    PermanentProviderError,
    ProviderError,
    RetryPolicy,
    ServiceHealth,
    call_with_retry,
)

LLM_CONTENT_CHARS = 12000

EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
BYLINE_RE = re.compile(r"\b[Bb]y[ \t]+([A-Z][a-z]+(?:[ \t]+[A-Z][a-zA-Z'\-]+){1,2})")
SOCIAL_RES = {
    "twitter": re.compile(r"https?://(?:www\.)?(?:twitter|x)\.com/([A-Za-z0-9_]{1,15})\b"),
    "linkedin": re.compile(r"https?://(?:[a-z]{2,3}\.)?linkedin\.com/in/([A-Za-z0-9\-_%]+)"),
    "instagram": re.compile(r"https?://(?:www\.)?instagram\.com/([A-Za-z0-9_.]+)"),
}

GENERIC_MAILBOXES = (
    "info", "contact", "hello", "news", "newsroom", "editor", "editors", "support",
    "admin", "press", "noreply", "no-reply", "webmaster", "tips", "letters",
)
ROLE_TITLES = (
    "editor-in-chief", "managing editor", "senior editor", "editor", "senior reporter",
    "reporter", "correspondent", "journalist", "columnist", "writer", "producer",
    "anchor", "contributor", "author",
)
JOURNALIST_INDICATORS = ("journalist", "reporter", "editor", "author", "writer", "correspondent", "contributor")
MEDIA_OUTLETS = ("new york times", "washington post", "cnn", "bbc", "reuters", "associated press")

_SUSPICIOUS_NAME = (
    re.compile(r"\d"),
    re.compile(r"^[A-Z\s]+$"),
    re.compile(r"^[a-z\s]+$"),
    re.compile(r"test|example|sample|demo|dummy|fake", re.IGNORECASE),
    re.compile(r"([a-z])\1{3,}"),
)
_TITLE_IN_NAME = re.compile(r"^(mr|mrs|ms|dr|prof)\.?\s+|(editor|reporter|journalist|author)$", re.IGNORECASE)
_PERSONAL_EMAIL = re.compile(r"^[a-z]+[._-]?[a-z]+@", re.IGNORECASE)


def is_generic_email(email: str) -> bool:
    return email.split("@", 1)[0].lower() in GENERIC_MAILBOXES


def name_confidence(name: str) -> float:
    clean = name.strip()
    if not clean:
        return 0.0
    parts = clean.split()
    score = 0.4 if len(parts) >= 2 else 0.2
    if 3 <= len(clean) <= 50 and not any(p.search(clean) for p in _SUSPICIOUS_NAME):
        score += 0.3
    if _TITLE_IN_NAME.search(clean):
        score -= 0.2
    if 5 <= len(clean) <= 30:
        score += 0.1
    return max(0.0, min(score, 1.0))


def email_confidence(email: str | None) -> float:
    if not email or not EMAIL_RE.fullmatch(email):
        return 0.0
    score = 0.3
    if is_generic_email(email):
        score -= 0.1
    elif _PERSONAL_EMAIL.match(email):
        score += 0.4
    if not email.lower().endswith(("gmail.com", "yahoo.com", "hotmail.com", "outlook.com")):
        score += 0.2
    return max(0.0, min(score, 1.0))


def confidence_score(contact: ExtractedContact, source_authority: float = 0.5) -> float:
    title = 0.0
    if contact.title:
        title = 0.9 if any(t in contact.title.lower() for t in ROLE_TITLES) else 0.5
    bio = min(len(contact.bio or "") / 200, 1.0)
    social = min(len(contact.social_profiles) * 0.5, 1.0)
    score = (
        name_confidence(contact.name) * 0.25
        + email_confidence(contact.email) * 0.20
        + title * 0.15
        + bio * 0.15
        + social * 0.15
        + source_authority * 0.10
    )
    return round(min(max(score, 0.0), 1.0), 2)


def relevance_score(contact: ExtractedContact, page: ScrapedPage) -> float:
    score = 0.5
    content = page.content.lower()
    text = f"{contact.name} {contact.title or ''} {contact.bio or ''}".lower()
    if any(indicator in text for indicator in JOURNALIST_INDICATORS):
        score += 0.2
    if contact.bio and any(outlet in contact.bio.lower() for outlet in MEDIA_OUTLETS):
        score += 0.15
    if f"by {contact.name.lower()}" in content:
        score += 0.15
    if contact.email and contact.email.lower() in content:
        score += 0.1
    if contact.title and any(t in contact.title.lower() for t in JOURNALIST_INDICATORS):
        score += 0.1
    return round(min(score, 1.0), 2)


def quality_score(contact: ExtractedContact) -> float:
    filled = sum(
        1
        for value in (contact.name, contact.title, contact.email, contact.phone, contact.outlet, contact.bio)
        if value
    )
    completeness = filled / 6
    social = 1.0 if contact.social_profiles else 0.0
    return round(completeness * 0.6 + social * 0.15 + contact.confidence_score * 0.25, 2)


def _name_from_email(email: str) -> str | None:
    local = email.split("@", 1)[0]
    parts = [p for p in re.split(r"[._-]", local) if p.isalpha() and len(p) > 1]
    if len(parts) < 2:
        return None
    return " ".join(p.capitalize() for p in parts[:3])


def _title_near(text: str, needle: str) -> str | None:
    for line in text.splitlines():
        if needle.lower() in line.lower():
            lowered = line.lower()
            for title in ROLE_TITLES:
                if title in lowered:
                    return title.title()
    return None


def _social_profiles(text: str) -> list[SocialProfile]:
    profiles: list[SocialProfile] = []
    for platform, pattern in SOCIAL_RES.items():
        for match in pattern.finditer(text):
            if not any(p.url == match.group(0) for p in profiles):
                profiles.append(SocialProfile(platform=platform, url=match.group(0), username=match.group(1)))
    return profiles


def extract_with_rules(page: ScrapedPage) -> list[ExtractedContact]:
    text = page.content
    outlet = page.title.split("|")[-1].strip() if "|" in page.title else domain_of(page.final_url or page.url)
    contacts: dict[str, ExtractedContact] = {}

    bylines = list(dict.fromkeys(BYLINE_RE.findall(text)))
    emails = [e for e in dict.fromkeys(EMAIL_RE.findall(text)) if not is_generic_email(e)]

    for email in emails:
        name = _name_from_email(email)
        local = email.split("@", 1)[0].lower()
        for byline in bylines:
            if any(part.lower() in local for part in byline.split() if len(part) > 2):
                name = byline
                break
        if not name:
            continue
        contacts[name.lower()] = ExtractedContact(
            id=str(uuid4()),
            name=name,
            title=_title_near(text, email) or _title_near(text, name),
            email=email.lower(),
            outlet=outlet or None,
            extraction_method=ExtractionMethod.RULE_BASED,
            source_url=page.url,
        )

    for byline in bylines:
        if byline.lower() in contacts:
            continue
        contacts[byline.lower()] = ExtractedContact(
            id=str(uuid4()),
            name=byline,
            title=_title_near(text, byline),
            outlet=outlet or None,
            extraction_method=ExtractionMethod.RULE_BASED,
            source_url=page.url,
        )

    profiles = _social_profiles(text)
    if len(contacts) == 1 and profiles:
        next(iter(contacts.values())).social_profiles = profiles
    return list(contacts.values())


def _contact_from_llm(item: dict[str, Any], page: ScrapedPage) -> ExtractedContact | None:
    name = str(item.get("name") or "").strip()
    if not name or name.lower() == "unknown":
        return None
    email = str(item.get("email") or "").strip().lower() or None
    if email and not EMAIL_RE.fullmatch(email):
        email = None
    profiles = [
        SocialProfile(
            platform=str(p.get("platform") or p.get("type") or "unknown").lower(),
            url=str(p.get("url") or ""),
            username=(p.get("username") or p.get("handle") or None),
        )
        for p in item.get("social_profiles") or item.get("socialProfiles") or []
        if isinstance(p, dict) and (p.get("url") or p.get("handle") or p.get("username"))
    ]
    try:
        reported = float(item.get("confidence", 0.5))
    except (TypeError, ValueError):
        reported = 0.5
    return ExtractedContact(
        id=str(uuid4()),
        name=name,
        title=(str(item["title"]).strip() or None) if item.get("title") else None,
        email=email,
        phone=(str(item["phone"]).strip() or None) if item.get("phone") else None,
        outlet=(str(item["outlet"]).strip() or None) if item.get("outlet") else None,
        bio=(str(item["bio"]).strip() or None) if item.get("bio") else None,
        social_profiles=profiles,
        confidence_score=min(max(reported, 0.0), 1.0),
        extraction_method=ExtractionMethod.AI_BASED,
        source_url=page.url,
    )


class ContactExtractor:
    name = "contact_extraction"

    def __init__(self, llm: LLMClient | None = None, retry_policy: RetryPolicy | None = None):
        self.llm = llm
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.health = HealthTracker(self.name)

    async def _extract_with_llm(
        self, llm: LLMClient, page: ScrapedPage, options: SearchOptions, query: str
    ) -> list[ExtractedContact]:
        system = render_prompt("contact_extraction.system")
        user = render_prompt(
            "contact_extraction.user",
            max_contacts=options.max_contacts_per_source,
            query=query,
            url=page.url,
            title=page.title,
            content=page.content[:LLM_CONTENT_CHARS],
        )
        completion = await call_with_retry(
            lambda: llm.complete(system=system, user=user, max_tokens=2000),
            provider="openrouter",
            name="contact_extraction.extract",
            policy=self.retry_policy,
            health=self.health,
        )
        try:
            items = parse_json_array(completion.text)
        except ValueError as exc:
            raise PermanentProviderError(f"Unparseable extraction response: {exc}", provider="openrouter") from exc
        contacts = [c for c in (_contact_from_llm(i, page) for i in items if isinstance(i, dict)) if c]
        for contact in contacts:
            contact.confidence_score = round((contact.confidence_score + confidence_score(contact)) / 2, 2)
        return contacts

    async def extract_page(self, page: ScrapedPage, options: SearchOptions, query: str = "") -> list[ExtractedContact]:
        contacts: list[ExtractedContact] | None = None
        if options.enable_ai_enhancement and self.llm is not None and self.llm.configured:
            try:
                contacts = await self._extract_with_llm(self.llm, page, options, query)
            except ProviderError as exc:
                logger.warning(f"LLM extraction failed for {page.url}, using rules: {exc}")
        if contacts is None:
            contacts = extract_with_rules(page)
            for contact in contacts:
                contact.confidence_score = confidence_score(contact)

        for contact in contacts:
            contact.relevance_score = relevance_score(contact, page)
            contact.quality_score = quality_score(contact)
        contacts.sort(key=lambda c: c.confidence_score, reverse=True)
        return contacts

    async def extract_contacts(
        self,
        pages: Sequence[ScrapedPage],
        options: SearchOptions,
        query: str = "",
    ) -> list[ExtractedContact]:
        extracted: list[ExtractedContact] = []
        for page in pages:
            extracted.extend(await self.extract_page(page, options, query))
        return extracted

    async def get_health(self) -> ServiceHealth:
        return self.health.snapshot(llm_configured=bool(self.llm and self.llm.configured))

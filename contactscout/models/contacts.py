from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any
from urllib.parse import urlparse


class VerificationStatus(StrEnum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"
    MANUAL_REVIEW = "MANUAL_REVIEW"


class ExtractionMethod(StrEnum):
    AI_BASED = "AI_BASED"
    RULE_BASED = "RULE_BASED"
    HYBRID = "HYBRID"
    MANUAL = "MANUAL"


def domain_of(url: str) -> str:
    host = (urlparse(url).hostname or "").lower().strip()
    if host.startswith("www."):
        host = host[4:]
    return host


@dataclass(slots=True)
class SearchResult:
    """A single web search hit, normalized across providers."""

    title: str
    url: str
    content: str
    score: float
    provider: str = ""
    query: str = ""

    @property
    def domain(self) -> str:
        return domain_of(self.url)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "url": self.url,
            "content": self.content,
            "score": self.score,
            "provider": self.provider,
            "query": self.query,
            "domain": self.domain,
        }


@dataclass(slots=True)
class ScrapedPage:
    url: str
    final_url: str
    status_code: int
    title: str
    content: str
    timing_ms: int = 0


@dataclass(slots=True)
class SocialProfile:
    platform: str
    url: str
    username: str | None = None


@dataclass(slots=True)
class ExtractedContact:
    id: str
    name: str
    title: str | None = None
    email: str | None = None
    phone: str | None = None
    outlet: str | None = None
    bio: str | None = None
    social_profiles: list[SocialProfile] = field(default_factory=list)
    confidence_score: float = 0.0
    relevance_score: float = 0.0
    quality_score: float = 0.0
    verification_status: VerificationStatus = VerificationStatus.PENDING
    extraction_method: ExtractionMethod = ExtractionMethod.RULE_BASED
    source_url: str = ""

    def dedupe_key(self) -> tuple[str, str]:
        if self.email:
            return ("EMAIL", self.email.strip().lower())
        return ("NAME_TITLE", f"{self.name}_{self.title or ''}".strip().lower())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "title": self.title,
            "email": self.email,
            "phone": self.phone,
            "outlet": self.outlet,
            "bio": self.bio,
            "social_profiles": [
                {"platform": p.platform, "url": p.url, "username": p.username}
                for p in self.social_profiles
            ],
            "confidence_score": self.confidence_score,
            "relevance_score": self.relevance_score,
            "quality_score": self.quality_score,
            "verification_status": self.verification_status.value,
            "extraction_method": self.extraction_method.value,
            "source_url": self.source_url,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExtractedContact":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            title=data.get("title"),
            email=data.get("email"),
            phone=data.get("phone"),
            outlet=data.get("outlet"),
            bio=data.get("bio"),
            social_profiles=[
                SocialProfile(
                    platform=str(p.get("platform", "")),
                    url=str(p.get("url", "")),
                    username=p.get("username"),
                )
                for p in data.get("social_profiles") or []
            ],
            confidence_score=float(data.get("confidence_score") or 0.0),
            relevance_score=float(data.get("relevance_score") or 0.0),
            quality_score=float(data.get("quality_score") or 0.0),
            verification_status=VerificationStatus(
                data.get("verification_status") or VerificationStatus.PENDING
            ),
            extraction_method=ExtractionMethod(
                data.get("extraction_method") or ExtractionMethod.RULE_BASED
            ),
            source_url=str(data.get("source_url") or ""),
        )


@dataclass(slots=True)
class SearchSource:
    url: str
    title: str
    provider: str
    query: str
    confidence_score: float
    contact_count: int = 0

    @property
    def domain(self) -> str:
        return domain_of(self.url)

    @classmethod
    def from_result(cls, result: SearchResult) -> "SearchSource":
        return cls(
            url=result.url,
            title=result.title,
            provider=result.provider,
            query=result.query,
            confidence_score=result.score,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "domain": self.domain,
            "title": self.title,
            "provider": self.provider,
            "query": self.query,
            "confidence_score": self.confidence_score,
            "contact_count": self.contact_count,
        }


@dataclass(slots=True)
class DuplicateGroup:
    kept_contact_id: str
    duplicate_contact_ids: list[str]
    match_type: str


@dataclass(slots=True)
class AggregatedResult:
    """Contacts and sources of a finished pipeline, cacheable as a unit."""

    sources: list[SearchSource] = field(default_factory=list)
    contacts: list[ExtractedContact] = field(default_factory=list)
    duplicates: list[DuplicateGroup] = field(default_factory=list)
    total_found: int = 0
    average_confidence: float = 0.0
    average_quality: float = 0.0

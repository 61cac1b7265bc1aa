from __future__ import annotations

import json

import httpx
import pytest

from contactscout.llm_client import Completion, Usage
from contactscout.models.contacts import ExtractionMethod, ScrapedPage
from contactscout.models.search import SearchOptions
from contactscout.tools.base import RetryPolicy
from contactscout.tools.contact_extractor import (
    ContactExtractor,
    email_confidence,
    extract_with_rules,
    is_generic_email,
    name_confidence,
)

CONTENT = (
    "Climate desk\n"
    "By Jane Doe\n"
    "Jane Doe is a senior reporter covering climate.\n"
    "Contact: jane.doe@dailynews.com\n"
    "Email: info@dailynews.com\n"
    "Follow https://twitter.com/janedoe"
)


def _page(content: str = CONTENT) -> ScrapedPage:
    return ScrapedPage(
        url="https://dailynews.com/team",
        final_url="https://dailynews.com/team",
        status_code=200,
        title="Climate | Daily News",
        content=content,
    )


class FakeLLM:
    configured = True
    model = "test-model"

    def __init__(self, reply: str | None = None, error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.calls = 0

    async def complete(self, *, system: str, user: str, max_tokens: int = 1024) -> Completion:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return Completion(text=self.reply or "[]", model=self.model, usage=Usage())


def test_generic_mailboxes_are_detected():
    assert is_generic_email("info@paper.com")
    assert not is_generic_email("jane.doe@paper.com")


def test_name_and_email_confidence():
    assert name_confidence("Jane Doe") > name_confidence("JANE")
    assert name_confidence("") == 0.0
    assert email_confidence("jane.doe@paper.com") > email_confidence("info@paper.com")
    assert email_confidence("not-an-email") == 0.0


def test_rules_pair_email_with_byline():
    contacts = extract_with_rules(_page())

    assert len(contacts) == 1
    contact = contacts[0]
    assert contact.name == "Jane Doe"
    assert contact.email == "jane.doe@dailynews.com"
    assert contact.title == "Senior Reporter"
    assert contact.outlet == "Daily News"
    assert contact.extraction_method is ExtractionMethod.RULE_BASED
    assert [p.username for p in contact.social_profiles] == ["janedoe"]


def test_rules_ignore_pages_without_people():
    assert extract_with_rules(_page("Write to info@dailynews.com for tips.")) == []


@pytest.mark.asyncio
async def test_extract_without_llm_scores_rule_contacts():
    extractor = ContactExtractor(llm=None)
    contacts = await extractor.extract_contacts([_page()], SearchOptions())

    assert len(contacts) == 1
    contact = contacts[0]
    assert 0.0 < contact.confidence_score <= 1.0
    assert contact.relevance_score == 1.0
    assert contact.quality_score > 0.0


@pytest.mark.asyncio
async def test_llm_contacts_are_parsed_and_blended():
    reply = json.dumps(
        [
            {"name": "Ana Lima", "title": "Editor", "email": "ana@paper.com", "confidence": 0.9},
            {"name": "Unknown"},
            {"name": "Bad Email", "email": "nope"},
        ]
    )
    llm = FakeLLM(reply=f"```json\n{reply}\n```")
    extractor = ContactExtractor(llm=llm, retry_policy=RetryPolicy(max_attempts=1))

    contacts = await extractor.extract_contacts([_page()], SearchOptions(), query="climate reporters")

    assert llm.calls == 1
    assert [c.name for c in contacts] == ["Ana Lima", "Bad Email"]
    ana = contacts[0]
    assert ana.extraction_method is ExtractionMethod.AI_BASED
    assert ana.email == "ana@paper.com"
    assert 0.0 < ana.confidence_score < 0.9
    assert contacts[1].email is None


@pytest.mark.asyncio
async def test_llm_failure_falls_back_to_rules():
    llm = FakeLLM(error=httpx.ConnectError("down"))
    extractor = ContactExtractor(llm=llm, retry_policy=RetryPolicy(max_attempts=1))

    contacts = await extractor.extract_contacts([_page()], SearchOptions())

    assert llm.calls == 1
    assert [c.extraction_method for c in contacts] == [ExtractionMethod.RULE_BASED]
    health = await extractor.get_health()
    assert health.details["llm_configured"] is True
    assert health.error_rate == 100.0


@pytest.mark.asyncio
async def test_llm_is_skipped_when_ai_enhancement_disabled():
    llm = FakeLLM(reply="[]")
    extractor = ContactExtractor(llm=llm)
    await extractor.extract_contacts([_page()], SearchOptions(enable_ai_enhancement=False))
    assert llm.calls == 0

"""Query generation: template expansion plus optional LLM enhancement."""
from __future__ import annotations

import time
from datetime import date
from uuid import uuid4

from loguru import logger

from contactscout.llm_client import LLMClient, parse_json_array
from contactscout.models.queries import GeneratedQuery
from contactscout.models.search import SearchCriteria, SearchOptions
from contactscout.services.prompt_store import render_prompt
from contactscout.services.query_templates import expand_templates
from contactscout.services.scoring import QueryScorer
from contactscout.tools.base import (
    HealthTracker,
    PermanentProviderError,
    ProviderError,
    RetryPolicy,
    ServiceHealth,
    call_with_retry,
)

AI_QUERY_COUNT = 6


def build_context(criteria: SearchCriteria) -> str:
    parts = []
    for label, values in (
        ("Categories", criteria.categories),
        ("Beats", criteria.beats),
        ("Countries", criteria.countries),
        ("Languages", criteria.languages),
        ("Topics", criteria.topics),
    ):
        if values:
            parts.append(f"{label}: {', '.join(values)}")
    return "\nAdditional context:\n" + "\n".join(parts) if parts else ""


class QueryGenerator:
    name = "query_generation"

    def __init__(
        self,
        llm: LLMClient | None = None,
        scorer: QueryScorer | None = None,
        retry_policy: RetryPolicy | None = None,
        max_queries: int = 20,
    ):
        self.llm = llm
        self.scorer = scorer or QueryScorer()
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.max_queries = max_queries
        self.health = HealthTracker(self.name)

    async def _ai_queries(self, llm: LLMClient, seed: str, criteria: SearchCriteria) -> list[str]:
        system = render_prompt(
            "query_generation.expansion_system",
            today_iso=date.today().isoformat(),
            query_count=AI_QUERY_COUNT,
        )
        user = render_prompt(
            "query_generation.expansion_user",
            query=seed.strip() or "media contacts",
            context=build_context(criteria),
        )
        completion = await call_with_retry(
            lambda: llm.complete(system=system, user=user, max_tokens=800),
            provider="openrouter",
            name="query_generation.expand",
            policy=self.retry_policy,
            health=self.health,
        )
        try:
            items = parse_json_array(completion.text)
        except ValueError as exc:
            raise PermanentProviderError(f"Unparseable query expansion: {exc}", provider="openrouter") from exc
        return [str(item).strip() for item in items if isinstance(item, str) and item.strip()]

    async def generate_queries(
        self,
        seed: str,
        criteria: SearchCriteria,
        options: SearchOptions,
        search_id: str | None = None,
    ) -> list[GeneratedQuery]:
        """Return scored queries, best first.

        A failed LLM enhancement falls back to the template queries; it only
        raises when nothing at all could be generated.
        """
        started = time.monotonic()
        batch_id = str(uuid4())

        candidates: list[tuple[str, str, bool]] = []
        if seed.strip():
            candidates.append(("original", seed.strip(), False))
        candidates.extend((template_id, text, False) for template_id, text in expand_templates(seed, criteria))

        ai_error: ProviderError | None = None
        if options.enable_ai_enhancement and self.llm is not None and self.llm.configured:
            try:
                candidates.extend(("ai_expansion", text, True) for text in await self._ai_queries(self.llm, seed, criteria))
            except ProviderError as exc:
                ai_error = exc
                logger.warning(f"AI query enhancement failed, using templates only: {exc}")

        seen: set[str] = set()
        unique: list[tuple[str, str, bool]] = []
        for candidate in candidates:
            key = " ".join(candidate[1].lower().split())
            if key not in seen:
                seen.add(key)
                unique.append(candidate)

        if not unique:
            if ai_error is not None:
                raise ai_error
            raise PermanentProviderError("No queries could be generated", provider=self.name)

        texts = [text for _, text, _ in unique]
        scores = self.scorer.score_batch(texts, seed, criteria)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        model = self.llm.model if self.llm is not None else None

        queries = [
            GeneratedQuery(
                id=str(uuid4()),
                text=text,
                original_query=seed,
                scores=score,
                search_id=search_id,
                batch_id=batch_id,
                metadata={
                    "model": model if ai_enhanced else None,
                    "template_id": template_id,
                    "ai_enhanced": ai_enhanced,
                    "processing_ms": elapsed_ms,
                },
            )
            for (template_id, text, ai_enhanced), score in zip(unique, scores)
        ]
        queries.sort(key=lambda q: q.scores.overall, reverse=True)
        return queries[: self.max_queries]

    async def get_health(self) -> ServiceHealth:
        return self.health.snapshot(llm_configured=bool(self.llm and self.llm.configured))

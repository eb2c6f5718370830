"""
Company extraction engine.

Sends cleaned newsletter text to the LLM, parses the structured (or loosely
structured) answer into ``ExtractionCandidate`` objects and filters them by
confidence. Malformed output yields an empty result instead of an error so
one bad answer never blocks the batch.
"""

from __future__ import annotations

import json
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from pydantic import ValidationError as PydanticValidationError

from substack_intel.core.config import LLMConfig
from substack_intel.core.exceptions import ExtractionError, ExtractionParseError
from substack_intel.core.models import (
    ExtractionCandidate,
    ExtractionMetadata,
    ExtractionResult,
)
from substack_intel.utils.reliability import RetryPolicy

from .cache import ExtractionCache
from .json_utils import candidate_dicts, coerce_json_payload, parse_loose_candidates
from .llm_client import LLMClient
from .names import (
    infer_funding_status,
    normalize_company_name,
    normalize_funding_status,
    normalize_website,
)

logger = structlog.get_logger(__name__)

TRUNCATION_MARKER = "\n...[truncated]"
CONTEXT_WINDOW_CHARS = 160

SYSTEM_PROMPT = """You are a venture capital analyst reading startup and technology newsletters.
Identify every company that the newsletter discusses and return them as JSON.

Include:
- Startups and private companies at any stage
- Consumer brands and products that are the subject of discussion
- Companies that raised money, launched products, were acquired or were analysed

Exclude:
- Large public incumbents mentioned only in passing (Google, Apple, Microsoft, Amazon, Meta)
- Venture capital firms and investors
- Media outlets, newsletters and publications
- People, places and generic technologies

For each company return:
- name: the company's name as written
- description: one sentence on what the company does, or null
- website: the company's website if stated, or null
- fundingStatus: one of seed, series-a, series-b, series-c, public, unknown
- industry: a short list of industry tags
- sentiment: positive, negative or neutral, as the newsletter portrays it
- confidence: 0.0-1.0 that this is a real company actually discussed
    0.9-1.0 explicit, detailed discussion
    0.7-0.8 clear mention with some context
    0.5-0.6 passing reference
    below 0.5 uncertain
- context: the sentence that mentions the company, at most 200 characters

Respond with a single JSON object: {"companies": [...]}. Return {"companies": []} when none qualify."""

VERIFY_PROMPT = """You double-check company extractions from a newsletter.
For each candidate name decide whether it is a real company or product that the text actually discusses.
Respond with JSON: {"verified": [{"name": "...", "is_company": true, "reason": "..."}]}."""


def _first(item: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = item.get(key)
        if value not in (None, ""):
            return value
    return None


def _industry_tags(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    tags = []
    for tag in value:
        text = str(tag).strip().lower()
        if text and text not in tags:
            tags.append(text[:60])
    return tags[:10]


def truncate_content(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def find_context(text: str, name: str, window: int = CONTEXT_WINDOW_CHARS) -> str:
    """Snippet of ``text`` around the first occurrence of ``name``."""
    index = text.lower().find(name.lower())
    if index < 0:
        return ""
    start = max(0, index - window // 2)
    end = min(len(text), index + len(name) + window // 2)
    return " ".join(text[start:end].split())


class CompanyExtractor:
    """Extract company mentions from newsletter text with an LLM."""

    def __init__(
        self,
        llm: LLMClient,
        config: LLMConfig,
        retry_policy: Optional[RetryPolicy] = None,
        cache: Optional[ExtractionCache] = None,
    ):
        self.llm = llm
        self.config = config
        self.retry_policy = retry_policy or RetryPolicy(
            "extraction", max_attempts=3, base_delay=1.0, retryable=(ExtractionError,)
        )
        self.cache = cache

    @property
    def confidence_threshold(self) -> float:
        return self.config.confidence_threshold

    def extract_companies(self, clean_text: str, newsletter_name: str) -> ExtractionResult:
        """
        Extract candidate company mentions from one email.

        Args:
            clean_text: Normalized email text
            newsletter_name: Source newsletter, included in the prompt

        Returns:
            ExtractionResult with filtered candidates. Empty when the text is
            empty or the LLM answer could not be parsed.

        Raises:
            ExtractionError: LLM timeout or rate limit after retries
            AuthError: LLM credentials rejected
        """
        started = time.monotonic()
        text = (clean_text or "").strip()
        if not text:
            return ExtractionResult(metadata=ExtractionMetadata(model=self.config.model))

        cache_key = ExtractionCache.make_key(self.config.model, newsletter_name, text)
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                result = cached.model_copy(deep=True)
                result.metadata.cached = True
                logger.debug("Extraction cache hit", newsletter=newsletter_name)
                return result

        prompt = self._build_prompt(text, newsletter_name)
        response = self.retry_policy.call(self.llm.complete, SYSTEM_PROMPT, prompt)
        metadata = ExtractionMetadata(model=response.model or self.config.model, token_count=response.total_tokens)

        try:
            items = self._parse_response(response.text)
        except ExtractionParseError as e:
            metadata.parse_failed = True
            metadata.processing_ms = int((time.monotonic() - started) * 1000)
            logger.warning(
                "Could not parse LLM output, treating as no companies",
                newsletter=newsletter_name,
                error=e.message,
                output_preview=e.raw_output[:200],
            )
            return ExtractionResult(metadata=metadata)

        candidates, dropped = self._filter_candidates(items, text)
        metadata.raw_candidates = len(items)
        metadata.dropped_candidates = dropped

        if self.config.verify_pass and candidates:
            candidates, rejected = self._verify(candidates, text)
            metadata.verified = True
            metadata.dropped_candidates += rejected

        metadata.processing_ms = int((time.monotonic() - started) * 1000)
        result = ExtractionResult(candidates=candidates, metadata=metadata)

        if self.cache is not None:
            self.cache.set(cache_key, result)

        logger.info(
            "Company extraction completed",
            newsletter=newsletter_name,
            candidates=len(candidates),
            dropped=metadata.dropped_candidates,
            tokens=metadata.token_count,
            processing_ms=metadata.processing_ms,
        )
        return result

    def _build_prompt(self, text: str, newsletter_name: str) -> str:
        content = truncate_content(text, self.config.max_content_chars)
        return (
            f"Newsletter: {newsletter_name or 'Unknown'}\n\n"
            f"Extract the companies discussed in this newsletter:\n\n{content}"
        )

    def _parse_response(self, output: str) -> List[Dict[str, Any]]:
        """Parse JSON first, then fall back to bulleted text."""
        if not output or not output.strip():
            raise ExtractionParseError("Empty LLM response", raw_output=output or "")
        try:
            return candidate_dicts(coerce_json_payload(output))
        except ValueError as json_error:
            loose = parse_loose_candidates(output)
            if loose:
                logger.debug("Parsed loosely structured LLM output", candidates=len(loose))
                return loose
            raise ExtractionParseError(
                f"Unparseable LLM response: {json_error}", raw_output=output
            ) from json_error

    def _build_candidate(self, item: Dict[str, Any], text: str) -> Optional[ExtractionCandidate]:
        name = _first(item, "name", "company", "company_name")
        if not isinstance(name, str) or not normalize_company_name(name):
            return None

        context = _first(item, "context", "snippet", "quote") or find_context(text, name)
        funding = normalize_funding_status(
            _first(item, "fundingStatus", "funding_status", "funding_stage", "funding")
        )
        if funding is None or funding == "unknown":
            funding = infer_funding_status(str(context)) or funding

        try:
            return ExtractionCandidate(
                name=name,
                description=_first(item, "description", "summary"),
                website=normalize_website(_first(item, "website", "url", "domain")),
                funding_status=funding,
                industry=_industry_tags(_first(item, "industry", "industries", "tags")),
                sentiment=item.get("sentiment"),
                confidence=item.get("confidence"),
                context=str(context),
            )
        except (PydanticValidationError, ValueError, TypeError) as e:
            logger.debug("Dropped invalid extraction candidate", name=name, error=str(e))
            return None

    def _filter_candidates(
        self, items: Iterable[Dict[str, Any]], text: str
    ) -> Tuple[List[ExtractionCandidate], int]:
        """Apply the confidence threshold and keep one candidate per company."""
        best: Dict[str, ExtractionCandidate] = {}
        order: List[str] = []
        dropped = 0

        for item in items:
            candidate = self._build_candidate(item, text)
            if candidate is None or candidate.confidence < self.confidence_threshold:
                dropped += 1
                continue

            key = normalize_company_name(candidate.name)
            current = best.get(key)
            if current is None:
                best[key] = candidate
                order.append(key)
            else:
                dropped += 1
                if candidate.confidence > current.confidence:
                    best[key] = candidate

        return [best[key] for key in order], dropped

    def _verify(
        self, candidates: List[ExtractionCandidate], text: str
    ) -> Tuple[List[ExtractionCandidate], int]:
        """Second pass asking the model to confirm each candidate."""
        names = [c.name for c in candidates]
        prompt = (
            f"Candidates: {json.dumps(names)}\n\n"
            f"Text:\n{truncate_content(text, self.config.max_content_chars)}"
        )
        try:
            response = self.retry_policy.call(self.llm.complete, VERIFY_PROMPT, prompt)
            payload = coerce_json_payload(response.text)
        except (ExtractionError, ValueError) as e:
            logger.warning("Verification pass failed, keeping first-pass candidates", error=str(e))
            return candidates, 0

        entries = payload.get("verified", []) if isinstance(payload, dict) else payload
        rejected = set()
        for entry in entries if isinstance(entries, list) else []:
            if isinstance(entry, dict) and entry.get("is_company") is False:
                rejected.add(normalize_company_name(str(entry.get("name", ""))))

        kept = [c for c in candidates if normalize_company_name(c.name) not in rejected]
        if rejected:
            logger.info("Verification pass rejected candidates", rejected=sorted(rejected))
        return kept, len(candidates) - len(kept)

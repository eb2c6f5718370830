"""Utilities for normalising LLM payloads that should contain JSON."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)

# "- Acme Inc. (0.8, positive): raised a Series A"
_LOOSE_LINE_RE = re.compile(
    r"^\s*(?:[-*•]|\d+[.)])\s*"
    r"(?P<name>[^():\n]{1,120}?)\s*"
    r"(?:\((?P<meta>[^)]*)\))?\s*"
    r"(?:(?:\s*:|\s+[–—-])\s*(?P<context>.+))?$"
)
_NUMBER_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(%)?")
_SENTIMENTS = ("positive", "negative", "neutral")
LOOSE_DEFAULT_CONFIDENCE = 0.5


def coerce_json_payload(text: Optional[str]) -> Any:
    """
    Extract and parse a JSON object or array from an LLM response.

    Handles code fences, extra prose, and partial JSON snippets.
    """
    if not text:
        raise ValueError("Empty payload")

    candidate = text.strip()

    fence = _FENCE_RE.search(candidate)
    if fence:
        candidate = fence.group(1).strip()

    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        for pattern in (r"\{.*\}", r"\[.*\]"):
            match = re.search(pattern, candidate, re.DOTALL)
            if match:
                try:
                    return json.loads(match.group(0))
                except json.JSONDecodeError:
                    continue
        raise ValueError("Could not extract JSON from payload")


def candidate_dicts(payload: Any) -> List[Dict[str, Any]]:
    """Pull the list of company dicts out of a parsed payload."""
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        items = None
        for key in ("companies", "candidates", "mentions", "results", "data"):
            if isinstance(payload.get(key), list):
                items = payload[key]
                break
        if items is None:
            if "name" in payload:
                items = [payload]
            else:
                raise ValueError("Payload has no company list")
    else:
        raise ValueError(f"Unexpected payload type {type(payload).__name__}")
    return [item for item in items if isinstance(item, dict)]


def parse_loose_candidates(text: str) -> List[Dict[str, Any]]:
    """
    Best-effort parse of a bulleted, non-JSON answer.

    Each bullet becomes ``{"name", "confidence", "sentiment", "context"}``;
    lines that are not bullets are ignored.
    """
    results: List[Dict[str, Any]] = []
    for line in (text or "").splitlines():
        match = _LOOSE_LINE_RE.match(line)
        if not match:
            continue
        name = match.group("name").strip().strip("*_`\"'")
        if not name:
            continue
        meta = (match.group("meta") or "").lower()
        item: Dict[str, Any] = {"name": name, "context": (match.group("context") or "").strip()}

        number = _NUMBER_RE.search(meta)
        if number:
            value = float(number.group(1))
            item["confidence"] = value / 100.0 if number.group(2) or value > 1 else value
        elif item["context"]:
            item["confidence"] = LOOSE_DEFAULT_CONFIDENCE
        for sentiment in _SENTIMENTS:
            if sentiment in meta:
                item["sentiment"] = sentiment
                break
        results.append(item)
    return results

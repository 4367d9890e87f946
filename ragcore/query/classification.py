"""
Query classification: intent, domain and funnel stage.

The LLM path is best effort. Any failure (no client, transport error,
malformed response) routes to `heuristic_classify`, which never raises.
"""

import json
import re
from dataclasses import dataclass
from typing import Optional

from ragcore.providers.llm import JsonCompletionClient
from ragcore.shared.errors import ClassificationError, CompletionError
from ragcore.shared.observability import get_logger
from ragcore.shared.observability.metrics import classification_total

from .contracts import normalize_domain

logger = get_logger(__name__)

INTENTS = ("educational", "persuasive", "contrarian", "story", "emotional")
FUNNEL_STAGES = ("awareness", "consideration", "decision")
DEFAULT_INTENT = "educational"

DOMAIN_PATTERNS = [
    (re.compile(r"\b(seo|google|ranking|serp|keyword|backlink|search)\b", re.I), "seo"),
    (re.compile(r"\b(saas|mrr|arr|churn|retention|ltv|cac)\b", re.I), "saas"),
    (
        re.compile(r"\b(marketing|copy|headline|cta|funnel|landing)\b", re.I),
        "content marketing",
    ),
    (
        re.compile(r"\b(moneti[sz]e|monetization|revenue|ads|affiliate|rpm|cpm)\b", re.I),
        "monetization",
    ),
    (re.compile(r"\b(growth|acquisition|distribution|viral)\b", re.I), "growth"),
]

DECISION_PATTERN = re.compile(r"\b(price|pricing|buy|purchase|demo|trial|cta)\b", re.I)
CONSIDERATION_PATTERN = re.compile(r"\b(compare|vs\.?|alternatives|pros|cons)\b", re.I)

CLASSIFY_SYSTEM_PROMPT = (
    "Classify the user's prompt for retrieval. Return STRICT JSON only.\n"
    'Schema: {"intent":"educational|persuasive|contrarian|story|emotional",'
    '"domain":"SEO|Content marketing|SaaS|Monetization|Growth|Business strategy",'
    '"funnel_stage":"awareness|consideration|decision"}.\n'
    "Pick the single best values. Do not add extra keys."
)


@dataclass(frozen=True)
class QueryClassification:
    intent: str
    domain: str
    funnel_stage: str
    source: str = "heuristic"  # llm | heuristic


def heuristic_classify(query: str, fallback_intent: str = DEFAULT_INTENT) -> QueryClassification:
    """Keyword classification used when no LLM answer is available."""
    q = (query or "").strip()
    fallback_intent = (fallback_intent or "").strip() or DEFAULT_INTENT
    t = q.lower()

    intent = fallback_intent
    if t:
        if "contrarian" in t or "counter" in t or "against" in t:
            intent = "contrarian"
        elif "sell" in t or "persuade" in t or "pitch" in t:
            intent = "persuasive"
        elif "story" in t:
            intent = "story"
        elif "how" in t or "explain" in t or "why" in t:
            intent = "educational"

    domain = ""
    for pattern, name in DOMAIN_PATTERNS:
        if pattern.search(q):
            domain = name
            break
    if not domain and q:
        domain = "business strategy"

    funnel = "awareness"
    if DECISION_PATTERN.search(q):
        funnel = "decision"
    elif CONSIDERATION_PATTERN.search(q):
        funnel = "consideration"

    return QueryClassification(
        intent=intent,
        domain=normalize_domain(domain),
        funnel_stage=funnel,
        source="heuristic",
    )


class QueryClassifier:
    """Classifies retrieval queries, preferring the LLM when one is configured."""

    def __init__(
        self,
        client: Optional[JsonCompletionClient] = None,
        model: Optional[str] = None,
    ):
        self.client = client
        self.model = model

    def classify(self, query: str, fallback_intent: str = DEFAULT_INTENT) -> QueryClassification:
        q = (query or "").strip()
        fallback_intent = (fallback_intent or "").strip() or DEFAULT_INTENT

        if not q or self.client is None:
            result = heuristic_classify(q, fallback_intent)
        else:
            try:
                result = self._classify_llm(q, fallback_intent)
            except ClassificationError as exc:
                logger.warning("classification_fallback", reason=str(exc))
                result = heuristic_classify(q, fallback_intent)

        classification_total.labels(source=result.source).inc()
        return result

    def _classify_llm(self, query: str, fallback_intent: str) -> QueryClassification:
        try:
            data, _meta = self.client.complete_json(
                CLASSIFY_SYSTEM_PROMPT,
                json.dumps({"prompt": query}, ensure_ascii=False),
                temperature=0.0,
                model=self.model,
            )
        except CompletionError as exc:
            raise ClassificationError(str(exc)) from exc
        except Exception as exc:
            raise ClassificationError(f"unexpected classifier failure: {exc}") from exc

        if not isinstance(data, dict):
            raise ClassificationError("classifier returned a non-object response")

        intent = str(data.get("intent") or fallback_intent).strip()
        if intent not in INTENTS:
            intent = fallback_intent

        domain = normalize_domain(str(data.get("domain") or ""))
        if not domain:
            domain = heuristic_classify(query, fallback_intent).domain or "business strategy"

        funnel = str(data.get("funnel_stage") or "awareness").strip()
        if funnel not in FUNNEL_STAGES:
            funnel = "awareness"

        return QueryClassification(
            intent=intent, domain=domain, funnel_stage=funnel, source="llm"
        )

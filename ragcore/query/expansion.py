"""Domain- and intent-aware query expansion for the embedding input."""

from typing import Dict, List, Optional

from .classification import QueryClassification

DOMAIN_TERMS: Dict[str, List[str]] = {
    "seo": [
        "SEO",
        "rankings",
        "Google ranking signals",
        "search algorithm updates",
        "content quality guidelines",
        "SEO penalties",
    ],
    "content marketing": [
        "content marketing",
        "copywriting",
        "positioning",
        "messaging",
        "content quality",
    ],
    "saas": ["SaaS", "MRR", "churn", "retention", "activation", "pricing"],
    "monetization": ["monetization", "revenue", "ads", "affiliate", "pricing"],
    "growth": ["growth", "acquisition", "retention", "distribution"],
    "business strategy": ["business strategy", "tradeoffs", "constraints"],
}

INTENT_BOOSTERS: Dict[str, List[str]] = {
    "contrarian": ["counterarguments", "tradeoffs"],
    "persuasive": ["benefits", "objections"],
    "educational": ["definitions", "examples"],
}


class QueryExpander:
    def __init__(self, max_terms: int = 6):
        self.max_terms = max_terms

    def expand(self, query: str, classification: Optional[QueryClassification]) -> List[str]:
        """Return the query followed by domain terms and intent boosters, deduped and capped."""
        terms = [(query or "").strip()]
        if classification is not None:
            domain = classification.domain
            if domain:
                terms.extend(
                    DOMAIN_TERMS.get(domain, [domain, "tradeoffs", "constraints"])
                )
            terms.extend(INTENT_BOOSTERS.get(classification.intent, []))

        seen = set()
        expanded = []
        for term in terms:
            key = term.strip().lower()
            if not key or key in seen:
                continue
            seen.add(key)
            expanded.append(term.strip())
            if len(expanded) >= self.max_terms:
                break
        return expanded

    def embedding_input(
        self, query: str, classification: Optional[QueryClassification]
    ) -> str:
        expanded = self.expand(query, classification)
        return "\n".join(expanded) if expanded else (query or "")

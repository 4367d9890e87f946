# Prometheus metrics for retrieval, ranking and context assembly

from prometheus_client import Counter, Histogram, generate_latest

# ===== Retrieval metrics =====
retrieval_requests_total = Counter(
    "ragcore_retrieval_requests_total",
    "Knowledge chunk retrieval requests",
    ["mode"],  # semantic, recent, keyword_fallback
)

retrieval_latency_ms = Histogram(
    "ragcore_retrieval_latency_ms",
    "End-to-end knowledge chunk retrieval latency in milliseconds",
    ["mode"],
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000),
)

retrieval_fallback_total = Counter(
    "ragcore_retrieval_fallback_total",
    "Retrievals degraded to keyword search",
    ["reason"],
)

near_match_protected_total = Counter(
    "ragcore_near_match_protected_total",
    "Candidates protected as near matches",
)

recall_injections_total = Counter(
    "ragcore_recall_injections_total",
    "Recall guarantee injections and replacements",
    ["reason", "action"],  # action: append, replace
)

invariant_violations_total = Counter(
    "ragcore_invariant_violations_total",
    "Logged invariant violations",
    ["invariant"],
)

# ===== Ranking metrics =====
ranking_latency_ms = Histogram(
    "ragcore_ranking_latency_ms",
    "Composite scoring latency in milliseconds",
    buckets=(0.5, 1, 2, 5, 10, 25, 50, 100),
)

ranking_candidates_total = Histogram(
    "ragcore_ranking_candidates_total",
    "Candidates scored per request",
    buckets=(1, 5, 10, 25, 50, 100, 200),
)

# ===== Provider metrics =====
embedding_requests_total = Counter(
    "ragcore_embedding_requests_total",
    "Embedding provider requests",
    ["status"],  # ok, error, fallback
)

vector_search_latency_ms = Histogram(
    "ragcore_vector_search_latency_ms",
    "Vector store query latency in milliseconds",
    ["operation"],
    buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000),
)

classification_total = Counter(
    "ragcore_classification_total",
    "Query classifications by source",
    ["source"],  # llm, heuristic
)

circuit_breaker_transitions_total = Counter(
    "ragcore_circuit_breaker_transitions_total",
    "Circuit breaker state transitions",
    ["name", "state"],
)

# ===== Structure and context metrics =====
structure_resolutions_total = Counter(
    "ragcore_structure_resolutions_total",
    "Structure resolutions by outcome",
    ["resolution"],
)

ephemeral_generation_total = Counter(
    "ragcore_ephemeral_generation_total",
    "Ephemeral structure generations by source",
    ["source"],  # llm, llm_retry, hardcoded
)

context_tokens_used = Histogram(
    "ragcore_context_tokens_used",
    "Estimated tokens in assembled generation contexts",
    buckets=(100, 250, 500, 1000, 1500, 1800, 2500, 4000),
)

context_pruned_items_total = Counter(
    "ragcore_context_pruned_items_total",
    "Items pruned from generation contexts",
    ["category"],
)


def get_metrics() -> bytes:
    """
    Get current metrics in Prometheus exposition format.

    Returns:
        Metrics as bytes
    """
    return generate_latest()

"""
priorart search module.

Bundle validation, provider request/response types, normalization of
provider hits, parallel variant execution and cross-variant rank
aggregation.

Provider clients live in src.search.apis and are wired by the
composition root (src.main).
"""

from src.search.aggregator import IntersectionType, RankAggregator, UnifiedResult
from src.search.bundle import (
    BundleService,
    BundleStatus,
    QueryVariant,
    SearchBundle,
    VariantLabel,
    validate_bundle,
)
from src.search.executor import ExecutionReport, QueryExecutor, VariantOutcome
from src.search.normalizer import ContentType, PatentHit, ScholarHit, canonicalize_patent_id
from src.search.provider import DetailRequest, DetailResponse, SearchEngine, SearchRequest, SearchResponse

__all__ = [
    # Bundles
    "BundleService",
    "BundleStatus",
    "QueryVariant",
    "SearchBundle",
    "VariantLabel",
    "validate_bundle",
    # Provider types
    "SearchEngine",
    "SearchRequest",
    "SearchResponse",
    "DetailRequest",
    "DetailResponse",
    # Normalization
    "ContentType",
    "PatentHit",
    "ScholarHit",
    "canonicalize_patent_id",
    # Execution and aggregation
    "QueryExecutor",
    "ExecutionReport",
    "VariantOutcome",
    "RankAggregator",
    "UnifiedResult",
    "IntersectionType",
]

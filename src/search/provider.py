"""
Search provider contract.

Requests are a tagged union on ``kind`` so one provider ``execute()`` entry
point serves both list searches and per-patent detail lookups, and routing
through ProviderRegistry stays uniform.
"""

from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class SearchEngine(str, Enum):
    """Provider endpoints."""

    GOOGLE_PATENTS = "google_patents"
    GOOGLE_SCHOLAR = "google_scholar"
    GOOGLE_PATENTS_DETAILS = "google_patents_details"


# ============================================================================
# Requests
# ============================================================================


class SearchRequest(BaseModel):
    """Ranked list search for one query variant."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["search"] = "search"
    engine: SearchEngine = Field(default=SearchEngine.GOOGLE_PATENTS, description="Endpoint to query")
    query: str = Field(..., min_length=1, description="Query text")
    num: int = Field(default=20, ge=1, le=100, description="Results per page")
    page: int = Field(default=1, ge=1, description="1-based page")
    language: str | None = Field(default=None, description="Interface language (hl)")
    no_cache: bool | None = Field(default=None, description="Bypass provider-side cache")

    @property
    def start(self) -> int:
        """Zero-based offset of the first result on the requested page."""
        return (self.page - 1) * self.num


class DetailRequest(BaseModel):
    """Full-text detail lookup for one patent identifier format."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["detail"] = "detail"
    patent_id: str = Field(..., min_length=1, description="Identifier as sent to the provider")
    fields: tuple[str, ...] = Field(default=(), description="Fields to keep in the response")


ProviderRequest = Annotated[SearchRequest | DetailRequest, Field(discriminator="kind")]
provider_request_adapter: TypeAdapter[SearchRequest | DetailRequest] = TypeAdapter(ProviderRequest)


# ============================================================================
# Responses
# ============================================================================


class SearchResponse(BaseModel):
    """Raw ranked items returned for a SearchRequest.

    Items keep the provider's own shape; the normalizer validates them.
    """

    provider: str = Field(..., description="Provider that served the request")
    engine: SearchEngine
    query: str
    items: list[dict[str, Any]] = Field(default_factory=list, description="Provider items in rank order")
    total_results: int | None = Field(default=None, ge=0)
    elapsed_ms: float = Field(default=0.0, ge=0.0)


class DetailResponse(BaseModel):
    """Raw detail payload returned for a DetailRequest."""

    provider: str
    requested_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    elapsed_ms: float = Field(default=0.0, ge=0.0)

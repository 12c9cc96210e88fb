"""
LLM-backed novelty assessment for priorart.

Includes:
- LLM providers (Ollama, OpenAI-compatible) behind the provider registry
- Lenient JSON extraction and pydantic schemas for model output
- Two-stage novelty assessment orchestration
"""

from src.filter.llm import build_llm_registry, call_llm
from src.filter.llm_schemas import AssessmentStatus, Determination, InventionSummary, NoveltyCandidate
from src.filter.novelty import NoveltyAssessmentOrchestrator, NoveltyLLMGateway

__all__ = [
    "build_llm_registry",
    "call_llm",
    "AssessmentStatus",
    "Determination",
    "InventionSummary",
    "NoveltyCandidate",
    "NoveltyAssessmentOrchestrator",
    "NoveltyLLMGateway",
]

"""
Search run lifecycle for priorart.

- Credit gate: atomic credit decrement and run creation
- Run state machine: RUNNING -> terminal status transitions
- Search run service: background execution and status payloads
- Detail fetcher: sequential patent detail retrieval for the shortlist
"""

from src.research.credits import CreditBalance, CreditGate
from src.research.details import DetailFetcher, DetailFetchSummary, DetailStatus
from src.research.pipeline import Level0Result, RunOutcome, SearchRunService
from src.research.state import RunStateMachine, RunStatus, resolve_outcome

__all__ = [
    "CreditBalance",
    "CreditGate",
    "DetailFetcher",
    "DetailFetchSummary",
    "DetailStatus",
    "Level0Result",
    "RunOutcome",
    "SearchRunService",
    "RunStateMachine",
    "RunStatus",
    "resolve_outcome",
]

"""
Run state machine.

    (start) --admitted--> RUNNING --> COMPLETED
                                  --> COMPLETED_WITH_WARNINGS
                                  --> FAILED
    (start) --refused---> CREDIT_EXHAUSTED

Every state except RUNNING is terminal, and terminal runs are write-once:
transitions are applied with a compare-and-set on status = RUNNING so a late
writer can never overwrite a finished run.
"""

from enum import Enum
from typing import Any

from src.storage.database import Database, now_iso
from src.utils.errors import InvalidStateError, NotFoundError
from src.utils.logging import get_logger

logger = get_logger(__name__)


class RunStatus(str, Enum):
    """Status of a search run."""

    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    COMPLETED_WITH_WARNINGS = "COMPLETED_WITH_WARNINGS"
    FAILED = "FAILED"
    CREDIT_EXHAUSTED = "CREDIT_EXHAUSTED"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


INITIAL_STATUSES = frozenset({RunStatus.RUNNING, RunStatus.CREDIT_EXHAUSTED})
FINAL_FROM_RUNNING = frozenset(
    {RunStatus.COMPLETED, RunStatus.COMPLETED_WITH_WARNINGS, RunStatus.FAILED}
)
# A novelty assessment may only start from these
ASSESSABLE_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.COMPLETED_WITH_WARNINGS})


def resolve_outcome(succeeded: int, failed: int) -> RunStatus:
    """Terminal status from variant outcomes.

    - no variant succeeded: FAILED
    - all succeeded: COMPLETED
    - otherwise: COMPLETED_WITH_WARNINGS
    """
    if succeeded <= 0:
        return RunStatus.FAILED
    if failed <= 0:
        return RunStatus.COMPLETED
    return RunStatus.COMPLETED_WITH_WARNINGS


def check_transition(current: RunStatus | None, target: RunStatus) -> None:
    """Raise InvalidStateError unless current -> target is allowed.

    ``current`` is None for a run that does not exist yet.
    """
    if current is None:
        allowed = INITIAL_STATUSES
    elif current is RunStatus.RUNNING:
        allowed = FINAL_FROM_RUNNING
    else:
        allowed = frozenset()

    if target not in allowed:
        raise InvalidStateError(
            f"Invalid run transition: {current.value if current else 'NEW'} -> {target.value}",
            current_state=current.value if current else None,
        )


class RunStateMachine:
    """Applies run transitions to storage."""

    def __init__(self, db: Database):
        self._db = db

    @staticmethod
    def new_run_row(
        run_id: str,
        *,
        bundle_id: str,
        user_id: str,
        status: RunStatus,
        bundle_hash: str | None = None,
        approved_bundle_json: str | None = None,
        include_scholar: bool = False,
        credits_consumed: int = 0,
        error_message: str | None = None,
    ) -> dict[str, Any]:
        """Row for a brand-new run in an initial status."""
        check_transition(None, status)
        now = now_iso()
        return {
            "id": run_id,
            "bundle_id": bundle_id,
            "user_id": user_id,
            "status": status.value,
            "bundle_hash": bundle_hash,
            "approved_bundle_json": approved_bundle_json,
            "include_scholar": 1 if include_scholar else 0,
            "started_at": now if status is RunStatus.RUNNING else None,
            "finished_at": now if status.is_terminal else None,
            "credits_consumed": credits_consumed,
            "error_message": error_message,
            "created_at": now,
        }

    async def get_status(self, run_id: str) -> RunStatus:
        row = await self._db.get_run(run_id)
        if row is None:
            raise NotFoundError("run", run_id)
        return RunStatus(row["status"])

    async def finish(
        self,
        run_id: str,
        target: RunStatus,
        *,
        error_message: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        """Move a RUNNING run to a terminal status.

        Raises:
            InvalidStateError: If the run already left RUNNING.
            NotFoundError: If the run does not exist.
        """
        check_transition(RunStatus.RUNNING, target)

        data: dict[str, Any] = {**(extra or {}), "status": target.value, "finished_at": now_iso()}
        if error_message is not None:
            data["error_message"] = error_message

        updated = await self._db.update_run(run_id, data, expected_status=RunStatus.RUNNING.value)
        if updated == 0:
            current = await self.get_status(run_id)
            check_transition(current, target)

        logger.info("Run finished", run_id=run_id, status=target.value, error=error_message)

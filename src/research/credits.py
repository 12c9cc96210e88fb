"""
Credit gate: admission control for search runs.

The credit ledger itself (totals, top-ups) belongs to the billing side; this
module only reads remaining credit and consumes one unit per admitted run.

Admission is a single write transaction:
    UPDATE user_credits SET used = used + 1 WHERE user_id = ? AND used < total
    -> 1 row: insert run (RUNNING, credits_consumed = 1), mark bundle consumed
    -> 0 rows: refuse (no credit consumed, no RUNNING run created)

Two concurrent starts for the same user therefore serialize on the write
lock, and the second one sees the incremented counter.
"""

import uuid
from dataclasses import dataclass

from src.research.state import RunStateMachine, RunStatus
from src.search.bundle import BundleRecord
from src.storage.database import Database, now_iso
from src.utils.errors import InsufficientCreditError
from src.utils.logging import get_logger

logger = get_logger(__name__)

CREDITS_PER_RUN = 1


@dataclass(frozen=True)
class CreditBalance:
    user_id: str
    total: int
    used: int

    @property
    def remaining(self) -> int:
        return max(0, self.total - self.used)

    def to_dict(self) -> dict[str, int | str]:
        return {"user_id": self.user_id, "total": self.total, "used": self.used, "remaining": self.remaining}


class CreditGate:
    """Reads remaining credit and admits runs atomically."""

    def __init__(self, db: Database, *, persist_refused_runs: bool = False):
        """
        Args:
            db: Database handle.
            persist_refused_runs: Write a CREDIT_EXHAUSTED run row for refused
                starts (audit trail). The refusal is raised either way.
        """
        self._db = db
        self._persist_refused = persist_refused_runs

    async def get_remaining(self, user_id: str) -> CreditBalance:
        """Current balance. A user without a ledger row has no credit."""
        row = await self._db.get_user_credits(user_id)
        if row is None:
            return CreditBalance(user_id=user_id, total=0, used=0)
        return CreditBalance(user_id=user_id, total=row["total_credits"], used=row["used_credits"])

    async def admit(
        self,
        record: BundleRecord,
        *,
        user_id: str,
        include_scholar: bool = False,
    ) -> str:
        """Consume one credit and create the RUNNING run in one transaction.

        Args:
            record: The approved bundle being executed.
            user_id: Initiating user.
            include_scholar: Whether the run also queries scholarly search.

        Returns:
            The new run ID.

        Raises:
            InsufficientCreditError: If the user has no remaining credit.
        """
        run_id = str(uuid.uuid4())
        snapshot = record.bundle.canonical_json()
        bundle_hash = record.bundle_hash or record.bundle.content_hash()

        async with self._db.transaction() as tx:
            cursor = await tx.execute(
                """
                UPDATE user_credits
                SET used_credits = used_credits + ?, updated_at = ?
                WHERE user_id = ? AND used_credits + ? <= total_credits
                """,
                (CREDITS_PER_RUN, now_iso(), user_id, CREDITS_PER_RUN),
            )
            admitted = cursor.rowcount == 1

            if admitted:
                row = RunStateMachine.new_run_row(
                    run_id,
                    bundle_id=record.id,
                    user_id=user_id,
                    status=RunStatus.RUNNING,
                    bundle_hash=bundle_hash,
                    approved_bundle_json=snapshot,
                    include_scholar=include_scholar,
                    credits_consumed=CREDITS_PER_RUN,
                )
                await tx.insert("runs", row)
                await tx.execute(
                    "UPDATE bundles SET consumed = 1, updated_at = ? WHERE id = ?",
                    (now_iso(), record.id),
                )
                await tx.execute(
                    """
                    INSERT INTO bundle_history (bundle_id, action, actor_id, from_status, to_status, note, created_at)
                    VALUES (?, 'consumed', ?, ?, ?, ?, ?)
                    """,
                    (record.id, user_id, record.status.value, record.status.value, f"run {run_id}", now_iso()),
                )
            elif self._persist_refused:
                row = RunStateMachine.new_run_row(
                    run_id,
                    bundle_id=record.id,
                    user_id=user_id,
                    status=RunStatus.CREDIT_EXHAUSTED,
                    bundle_hash=bundle_hash,
                    include_scholar=include_scholar,
                    error_message="Insufficient credits",
                )
                await tx.insert("runs", row)

        if not admitted:
            balance = await self.get_remaining(user_id)
            logger.warning(
                "Run refused: insufficient credits",
                user_id=user_id,
                bundle_id=record.id,
                total=balance.total,
                used=balance.used,
            )
            raise InsufficientCreditError(
                user_id,
                total=balance.total,
                used=balance.used,
                run_id=run_id if self._persist_refused else None,
            )

        logger.info("Run admitted", run_id=run_id, user_id=user_id, bundle_id=record.id)
        return run_id



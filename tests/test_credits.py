"""
Tests for src/research/credits.py

## Test Perspectives Table

| Case ID | Input / Precondition | Perspective (Equivalence / Boundary) | Expected Result | Notes |
|---------|---------------------|---------------------------------------|-----------------|-------|
| TC-CG-N-01 | 3 total, 1 used | Equivalence – normal | remaining 2 | - |
| TC-CG-B-01 | No ledger row | Boundary – missing | 0 / 0 | - |
| TC-CG-N-02 | 1 remaining | Equivalence – normal | RUNNING run, credit 1, bundle consumed | - |
| TC-CG-A-01 | 0 remaining | Equivalence – abnormal | 402, no run, counter unchanged | - |
| TC-CG-N-03 | 0 remaining, persist_refused_runs | Equivalence – normal | CREDIT_EXHAUSTED row, 0 consumed | audit |
| TC-CG-B-02 | Two concurrent admits, total=1 | Boundary – race | Exactly one admitted | atomic |
| TC-CG-B-03 | used > total | Boundary – overdrawn | Refused, remaining 0 | - |
"""

import asyncio

import pytest

from src.research.credits import CreditBalance, CreditGate
from src.research.state import RunStatus
from src.utils.errors import InsufficientCreditError

pytestmark = pytest.mark.unit


class TestBalance:
    """Remaining credit."""

    @pytest.mark.asyncio
    async def test_remaining(self, memory_database):
        """TC-CG-N-01: total - used."""
        await memory_database.set_user_credits("user-1", 3, 1)

        balance = await CreditGate(memory_database).get_remaining("user-1")

        assert balance == CreditBalance("user-1", 3, 1)
        assert balance.remaining == 2
        assert balance.to_dict()["remaining"] == 2

    @pytest.mark.asyncio
    async def test_no_ledger_row(self, memory_database):
        """TC-CG-B-01: Unknown users have no credit."""
        balance = await CreditGate(memory_database).get_remaining("nobody")

        assert balance.remaining == 0


class TestAdmission:
    """Admission transaction."""

    @pytest.mark.asyncio
    async def test_admit(self, memory_database, approved_bundle):
        """TC-CG-N-02: One credit buys one RUNNING run."""
        # Given: One remaining credit
        record = await approved_bundle()
        await memory_database.set_user_credits("user-1", 1)

        # When: Admitting
        run_id = await CreditGate(memory_database).admit(record, user_id="user-1", include_scholar=True)

        # Then: Run row, credit consumed, bundle marked
        run = await memory_database.get_run(run_id)
        assert run["status"] == RunStatus.RUNNING.value
        assert run["credits_consumed"] == 1
        assert run["include_scholar"] == 1
        assert run["bundle_hash"] == record.bundle_hash
        assert run["approved_bundle_json"] == record.bundle.canonical_json()
        credits = await memory_database.get_user_credits("user-1")
        assert credits["used_credits"] == 1
        bundle = await memory_database.get_bundle(record.id)
        assert bundle["consumed"] == 1
        history = await memory_database.get_bundle_history(record.id)
        assert history[-1]["action"] == "consumed"

    @pytest.mark.asyncio
    async def test_refused(self, memory_database, approved_bundle):
        """TC-CG-A-01: No credit, no run."""
        # Given: Credit exhausted
        record = await approved_bundle()
        await memory_database.set_user_credits("user-1", 1, 1)

        # When / Then: Refused with 402
        with pytest.raises(InsufficientCreditError) as exc_info:
            await CreditGate(memory_database).admit(record, user_id="user-1")

        assert exc_info.value.status_code == 402
        assert "run_id" not in exc_info.value.details
        assert await memory_database.list_runs_for_user("user-1") == []
        assert (await memory_database.get_user_credits("user-1"))["used_credits"] == 1

    @pytest.mark.asyncio
    async def test_refused_persisted(self, memory_database, approved_bundle):
        """TC-CG-N-03: Refusals can leave a CREDIT_EXHAUSTED audit row."""
        record = await approved_bundle()
        await memory_database.set_user_credits("user-1", 0)

        with pytest.raises(InsufficientCreditError) as exc_info:
            await CreditGate(memory_database, persist_refused_runs=True).admit(record, user_id="user-1")

        run = await memory_database.get_run(exc_info.value.details["run_id"])
        assert run["status"] == RunStatus.CREDIT_EXHAUSTED.value
        assert run["credits_consumed"] == 0
        assert run["finished_at"] is not None
        assert (await memory_database.get_bundle(record.id))["consumed"] == 0

    @pytest.mark.asyncio
    async def test_concurrent_admits(self, memory_database, approved_bundle):
        """TC-CG-B-02: Two concurrent starts with one credit admit exactly one."""
        # Given: One credit and two approved bundles
        first = await approved_bundle()
        second = await approved_bundle()
        await memory_database.set_user_credits("user-1", 1)
        gate = CreditGate(memory_database)

        # When: Admitting both at once
        outcomes = await asyncio.gather(
            gate.admit(first, user_id="user-1"),
            gate.admit(second, user_id="user-1"),
            return_exceptions=True,
        )

        # Then: One run id, one refusal
        admitted = [o for o in outcomes if isinstance(o, str)]
        refused = [o for o in outcomes if isinstance(o, InsufficientCreditError)]
        assert len(admitted) == 1
        assert len(refused) == 1
        assert (await memory_database.get_user_credits("user-1"))["used_credits"] == 1
        assert len(await memory_database.list_runs_for_user("user-1")) == 1

    @pytest.mark.asyncio
    async def test_overdrawn(self, memory_database, approved_bundle):
        """TC-CG-B-03: An overdrawn ledger refuses."""
        record = await approved_bundle()
        await memory_database.set_user_credits("user-1", 1, 2)

        with pytest.raises(InsufficientCreditError) as exc_info:
            await CreditGate(memory_database).admit(record, user_id="user-1")

        assert exc_info.value.details["remaining"] == 0

"""
Report gate.

A PDF report exists only for assessments that reached NOVEL, NOT_NOVEL or
DOUBT_RESOLVED. URLs are computed on read and omitted for every other
status; nothing is stored for them.
"""

from pathlib import Path
from typing import Any

from src.filter.llm_schemas import REPORTABLE_STATUSES, AssessmentStatus
from src.report.pdf import ReportRenderer
from src.storage.database import Database
from src.utils.errors import NotFoundError, ReportNotAvailableError
from src.utils.logging import get_logger

logger = get_logger(__name__)


def is_reportable(status: str | AssessmentStatus) -> bool:
    try:
        return AssessmentStatus(status) in REPORTABLE_STATUSES
    except ValueError:
        return False


class ReportGate:
    """Decides report availability and delegates rendering."""

    def __init__(self, db: Database, renderer: ReportRenderer, *, public_base_url: str = ""):
        self._db = db
        self._renderer = renderer
        self._base_url = public_base_url.rstrip("/")

    def report_url(self, run_id: str, assessment_id: str, status: str | AssessmentStatus) -> str | None:
        """Public URL of the report, or None while it cannot exist."""
        if not is_reportable(status):
            return None
        return f"{self._base_url}/runs/{run_id}/novelty-assessment/{assessment_id}/report"

    async def ensure_reportable(self, assessment_id: str, user_id: str | None = None) -> dict[str, Any]:
        """Load an assessment that is allowed to have a report.

        Raises:
            NotFoundError: Assessment missing or owned by another user.
            ReportNotAvailableError: Status does not permit a report.
        """
        row = await self._db.get_assessment(assessment_id)
        if row is None or (user_id is not None and row["user_id"] != user_id):
            raise NotFoundError("assessment", assessment_id)
        if not is_reportable(row["status"]):
            raise ReportNotAvailableError(assessment_id, row["status"])
        return row

    async def generate(self, assessment_id: str, user_id: str | None = None) -> Path:
        """Render (or re-render) the PDF for a reportable assessment."""
        await self.ensure_reportable(assessment_id, user_id)
        return await self._renderer.render(assessment_id)

    async def get_report(self, assessment_id: str, user_id: str | None = None) -> Path:
        """Path of the report, rendering it on first access."""
        row = await self.ensure_reportable(assessment_id, user_id)
        if row["report_path"] and Path(row["report_path"]).exists():
            return Path(row["report_path"])
        logger.info("Report not on disk, rendering", assessment_id=assessment_id)
        return await self._renderer.render(assessment_id)

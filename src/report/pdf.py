"""
PDF rendering of novelty assessments.

Layout:
    header, invention summary, search strategy (variant queries),
    assessment overview, per-candidate findings, detailed comparisons,
    novel / non-novel aspects, recommendations, footer.

The document is built with reportlab platypus in a worker thread; the
database reads happen on the event loop before that.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from src.filter.llm_schemas import InventionSummary, NoveltyCandidate, Stage1Output, Stage2Result
from src.search.bundle import SearchBundle
from src.storage.database import Database
from src.utils.errors import NotFoundError
from src.utils.logging import get_logger

logger = get_logger(__name__)

BRAND_COLOR = colors.HexColor("#1a365d")
ROW_COLORS = [colors.HexColor("#f7fafc"), colors.HexColor("#edf2f7")]

GRID_STYLE = [
    ("BACKGROUND", (0, 0), (-1, 0), BRAND_COLOR),
    ("VALIGN", (0, 0), (-1, -1), "TOP"),
    ("ROWBACKGROUNDS", (0, 1), (-1, -1), ROW_COLORS),
    ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
    ("TOPPADDING", (0, 0), (-1, -1), 4),
    ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
    ("LEFTPADDING", (0, 0), (-1, -1), 4),
    ("RIGHTPADDING", (0, 0), (-1, -1), 4),
]


@dataclass
class ReportData:
    """Everything the document needs, loaded up front."""

    assessment_id: str
    run_id: str
    status: str
    invention: InventionSummary
    candidates: list[NoveltyCandidate]
    variants: list[tuple[str, str]]
    final_determination: str | None
    confidence: int | None
    confidence_level: str | None
    remarks: str
    novel_aspects: list[str] = field(default_factory=list)
    non_novel_aspects: list[str] = field(default_factory=list)
    stage1: Stage1Output | None = None
    stage2: list[Stage2Result] = field(default_factory=list)


def _p(text: Any, style: ParagraphStyle) -> Paragraph:
    return Paragraph(escape(str(text)) if text not in (None, "") else "-", style)


class ReportRenderer:
    """Render an assessment to ``<reports_dir>/<assessment_id>.pdf``."""

    def __init__(self, db: Database, reports_dir: str | Path):
        self._db = db
        self._reports_dir = Path(reports_dir)
        self._styles = self._build_styles()

    @staticmethod
    def _build_styles() -> dict[str, ParagraphStyle]:
        base = getSampleStyleSheet()
        return {
            "title": ParagraphStyle(
                "ReportTitle",
                parent=base["Heading1"],
                fontSize=18,
                textColor=BRAND_COLOR,
                spaceAfter=6,
                alignment=TA_CENTER,
            ),
            "subtitle": ParagraphStyle(
                "ReportSubtitle",
                parent=base["Normal"],
                fontSize=9,
                textColor=colors.red,
                fontName="Helvetica-Oblique",
                spaceAfter=16,
                alignment=TA_CENTER,
            ),
            "heading": ParagraphStyle(
                "ReportHeading",
                parent=base["Heading2"],
                fontSize=12,
                textColor=BRAND_COLOR,
                spaceAfter=8,
                spaceBefore=14,
            ),
            "body": ParagraphStyle("ReportBody", parent=base["Normal"], fontSize=10, leading=13),
            "bold": ParagraphStyle("ReportBold", parent=base["Normal"], fontSize=10, fontName="Helvetica-Bold"),
            "cell": ParagraphStyle("ReportCell", parent=base["Normal"], fontSize=8, leading=10),
            "header": ParagraphStyle(
                "ReportHeader",
                parent=base["Normal"],
                fontSize=9,
                fontName="Helvetica-Bold",
                textColor=colors.whitesmoke,
                alignment=TA_CENTER,
            ),
            "footer": ParagraphStyle(
                "ReportFooter",
                parent=base["Normal"],
                fontSize=8,
                textColor=colors.grey,
                alignment=TA_CENTER,
            ),
        }

    async def load(self, assessment_id: str) -> ReportData:
        row = await self._db.get_assessment(assessment_id)
        if row is None:
            raise NotFoundError("assessment", assessment_id)
        run = await self._db.get_run(row["run_id"])
        if run is None:
            raise NotFoundError("run", row["run_id"])

        bundle = SearchBundle.model_validate_json(run["approved_bundle_json"])
        return ReportData(
            assessment_id=assessment_id,
            run_id=row["run_id"],
            status=row["status"],
            invention=InventionSummary.model_validate_json(row["invention_json"]),
            candidates=[NoveltyCandidate.model_validate(c) for c in json.loads(row["candidates_json"] or "[]")],
            variants=[(v.label, v.q) for v in bundle.query_variants],
            final_determination=row["final_determination"],
            confidence=row["confidence"],
            confidence_level=row["confidence_level"],
            remarks=row["final_remarks"] or "",
            novel_aspects=json.loads(row["novel_aspects_json"] or "[]"),
            non_novel_aspects=json.loads(row["non_novel_aspects_json"] or "[]"),
            stage1=Stage1Output.model_validate_json(row["stage1_json"]) if row["stage1_json"] else None,
            stage2=[Stage2Result.model_validate(r) for r in json.loads(row["stage2_json"] or "[]")],
        )

    async def render(self, assessment_id: str) -> Path:
        """Write the PDF and record its path on the assessment.

        Returns:
            Path of the written file.
        """
        data = await self.load(assessment_id)
        self._reports_dir.mkdir(parents=True, exist_ok=True)
        path = self._reports_dir / f"{assessment_id}.pdf"
        await asyncio.to_thread(self.build, data, path)
        await self._db.update_assessment(assessment_id, {"report_path": str(path)})
        logger.info("Report rendered", assessment_id=assessment_id, path=str(path))
        return path

    def build(self, data: ReportData, path: Path) -> None:
        s = self._styles
        doc = SimpleDocTemplate(
            str(path),
            pagesize=A4,
            rightMargin=0.75 * inch,
            leftMargin=0.75 * inch,
            topMargin=0.75 * inch,
            bottomMargin=0.75 * inch,
            title=f"Novelty assessment {data.assessment_id}",
        )
        story: list[Any] = [
            Paragraph("Prior-Art Novelty Assessment", s["title"]),
            Paragraph("This report is generated by AI, manual review required", s["subtitle"]),
        ]

        story.append(Paragraph("Invention", s["heading"]))
        summary = Table(
            [
                [_p("Title:", s["bold"]), _p(data.invention.title, s["body"])],
                [_p("Problem:", s["bold"]), _p(data.invention.problem, s["body"])],
                [_p("Solution:", s["bold"]), _p(data.invention.solution, s["body"])],
            ],
            colWidths=[1.3 * inch, 5.2 * inch],
        )
        summary.setStyle(TableStyle([("VALIGN", (0, 0), (-1, -1), "TOP"), ("BOTTOMPADDING", (0, 0), (-1, -1), 6)]))
        story.append(summary)

        story.append(Paragraph("Search Strategy", s["heading"]))
        story.append(self._grid([["Variant", "Query"], *data.variants], [1.0 * inch, 5.5 * inch]))

        story.append(Paragraph("Assessment Overview", s["heading"]))
        confidence = f"{data.confidence}%" if data.confidence is not None else "-"
        story.append(
            self._grid(
                [
                    ["Status", "Determination", "Confidence", "Level"],
                    [data.status, data.final_determination or "-", confidence, data.confidence_level or "-"],
                ],
                [1.6 * inch, 1.8 * inch, 1.4 * inch, 1.7 * inch],
            )
        )
        if data.remarks:
            story.append(Spacer(1, 0.1 * inch))
            story.append(_p(data.remarks, s["body"]))

        story.append(Paragraph("Candidate Findings", s["heading"]))
        story.append(self._findings_table(data))

        resolved = [r for r in data.stage2 if r.output is not None]
        if resolved:
            story.append(Paragraph("Detailed Comparisons", s["heading"]))
            rows = [["Number", "Determination", "Reasoning"]]
            rows.extend([r.identifier, r.output.determination.value, r.output.technical_reasoning] for r in resolved)
            story.append(self._grid(rows, [1.3 * inch, 1.2 * inch, 4.0 * inch]))

        for heading, aspects in (("Novel Aspects", data.novel_aspects), ("Non-Novel Aspects", data.non_novel_aspects)):
            story.append(Paragraph(heading, s["heading"]))
            if not aspects:
                story.append(_p("None identified.", s["body"]))
            for aspect in aspects:
                story.append(Paragraph(f"&bull; {escape(aspect)}", s["body"]))

        suggestions = [r.output.suggestions for r in resolved if r.output.suggestions]
        if suggestions:
            story.append(Paragraph("Recommendations", s["heading"]))
            for suggestion in suggestions:
                story.append(Paragraph(f"&bull; {escape(suggestion)}", s["body"]))

        story.append(Spacer(1, 0.4 * inch))
        generated = datetime.now(UTC).strftime("%Y-%m-%d %H:%M UTC")
        story.append(_p(f"Run {data.run_id} / assessment {data.assessment_id} / generated {generated}", s["footer"]))

        doc.build(story)

    def _findings_table(self, data: ReportData) -> Table:
        verdicts = {}
        if data.stage1 is not None:
            verdicts = {a.publication_number: a for a in data.stage1.patent_assessments}

        rows: list[list[Any]] = [["#", "Number", "Variants", "Relevance", "Title", "Reasoning"]]
        for idx, candidate in enumerate(data.candidates, start=1):
            verdict = verdicts.get(candidate.identifier)
            rows.append(
                [
                    str(idx),
                    candidate.identifier,
                    ", ".join(candidate.found_in_variants),
                    verdict.relevance.value if verdict else "-",
                    candidate.title,
                    verdict.reasoning if verdict else "",
                ]
            )
        return self._grid(rows, [0.3 * inch, 1.2 * inch, 0.9 * inch, 0.7 * inch, 1.6 * inch, 1.8 * inch])

    def _grid(self, rows: list[Any], widths: list[float]) -> Table:
        s = self._styles
        cells = [[_p(value, s["header"]) for value in rows[0]]]
        cells.extend([_p(value, s["cell"]) for value in row] for row in rows[1:])
        table = Table(cells, colWidths=widths, repeatRows=1)
        table.setStyle(TableStyle(GRID_STYLE))
        return table

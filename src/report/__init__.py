"""
Novelty assessment reports.

PDF rendering (reportlab) and the gate deciding when a report may exist.
"""

from src.report.gate import ReportGate, is_reportable
from src.report.pdf import ReportRenderer

__all__ = ["ReportGate", "ReportRenderer", "is_reportable"]

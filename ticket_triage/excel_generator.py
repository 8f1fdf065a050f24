"""
Excel report generator for the ticket triage pipeline.

Generates a workbook with:
- "Triage Results": one row per agent suggestion
- "Audit Trail": one row per audit entry, grouped by ticket
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from openpyxl import Workbook
from openpyxl.styles import Font, Alignment, PatternFill, Border, Side
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

from .config import OutputConfig
from .models import AgentSuggestion, AuditLogEntry, Ticket


logger = logging.getLogger(__name__)


class ReportGeneratorError(Exception):
    """Error during report generation."""
    pass


RESULT_COLUMNS = [
    {"header": "Ticket ID", "width": 34},
    {"header": "Ticket Title", "width": 40},
    {"header": "Status", "width": 15},
    {"header": "Predicted Category", "width": 18},
    {"header": "Confidence", "width": 12},
    {"header": "Auto-Closed", "width": 12},
    {"header": "Cited Articles", "width": 14},
    {"header": "Provider", "width": 12},
    {"header": "Latency (ms)", "width": 12},
    {"header": "Draft Reply", "width": 70},
    {"header": "Trace ID", "width": 34},
    {"header": "Created At", "width": 20},
]

AUDIT_COLUMNS = [
    {"header": "Ticket ID", "width": 34},
    {"header": "Timestamp", "width": 26},
    {"header": "Action", "width": 20},
    {"header": "Actor", "width": 10},
    {"header": "Trace ID", "width": 34},
    {"header": "Details", "width": 80},
]


def _excel_datetime(value: Optional[datetime]) -> Optional[datetime]:
    # Excel cells cannot hold timezone-aware datetimes
    if value is None:
        return None
    return value.replace(tzinfo=None)


def suggestion_to_row(suggestion: AgentSuggestion, ticket: Optional[Ticket]) -> list[Any]:
    """
    Convert a suggestion (and its ticket, if still present) to a row.

    Returns:
        List of cell values matching RESULT_COLUMNS order.
    """
    return [
        suggestion.ticket_id,
        ticket.title if ticket else "",
        ticket.status.value if ticket else "",
        suggestion.predicted_category.value,
        suggestion.confidence,
        "Yes" if suggestion.auto_closed else "No",
        len(suggestion.article_ids),
        suggestion.model_info.provider,
        suggestion.model_info.latency_ms,
        suggestion.draft_reply,
        suggestion.trace_id,
        _excel_datetime(suggestion.created_at),
    ]


def audit_to_row(entry: AuditLogEntry) -> list[Any]:
    """Convert an audit entry to a row matching AUDIT_COLUMNS order."""
    return [
        entry.ticket_id,
        entry.timestamp.isoformat(),
        entry.action.value,
        entry.actor.value,
        entry.trace_id,
        json.dumps(entry.meta, default=str, sort_keys=True),
    ]


class ExcelReportGenerator:
    """
    Generator for formatted Excel triage reports.

    Styled headers, alternating row fills, fixed column widths and a frozen
    header row on every sheet.
    """

    # Style configuration
    HEADER_FONT = Font(bold=True, color="FFFFFF", size=11)
    HEADER_FILL = PatternFill(start_color="2F5496", end_color="2F5496", fill_type="solid")
    HEADER_ALIGNMENT = Alignment(horizontal="center", vertical="center", wrap_text=True)

    CELL_ALIGNMENT = Alignment(vertical="top", wrap_text=True)
    CELL_BORDER = Border(
        left=Side(style="thin", color="D0D0D0"),
        right=Side(style="thin", color="D0D0D0"),
        top=Side(style="thin", color="D0D0D0"),
        bottom=Side(style="thin", color="D0D0D0"),
    )

    # Alternating row colors for readability
    ROW_FILL_ODD = PatternFill(start_color="F2F2F2", end_color="F2F2F2", fill_type="solid")
    ROW_FILL_EVEN = PatternFill(start_color="FFFFFF", end_color="FFFFFF", fill_type="solid")

    AUTO_CLOSED_FONT = Font(color="2E7D32", bold=True)

    def __init__(self, config: OutputConfig):
        self._config = config

    def generate(
        self,
        suggestions: list[AgentSuggestion],
        tickets: dict[str, Ticket],
        audit_entries: list[AuditLogEntry],
    ) -> Path:
        """
        Generate the triage report.

        Args:
            suggestions: Suggestions to list, one row each.
            tickets: Tickets by id, for titles and current status.
            audit_entries: Audit entries to list on the second sheet.

        Returns:
            Path to the generated Excel file.

        Raises:
            ReportGeneratorError: If report generation fails.
        """
        try:
            wb = Workbook()

            results = wb.active
            results.title = "Triage Results"
            ordered = sorted(suggestions, key=lambda s: (s.ticket_id, s.created_at))
            rows = [suggestion_to_row(s, tickets.get(s.ticket_id)) for s in ordered]
            self._write_sheet(results, RESULT_COLUMNS, rows)
            self._highlight_auto_closed(results, len(rows))

            trail = wb.create_sheet("Audit Trail")
            entries = sorted(audit_entries, key=lambda e: (e.ticket_id, e.timestamp))
            self._write_sheet(trail, AUDIT_COLUMNS, [audit_to_row(e) for e in entries])

            logger.info(
                f"Writing report with {len(rows)} suggestions and {len(entries)} audit entries"
            )

            # Ensure output directory exists
            self._config.output_dir.mkdir(parents=True, exist_ok=True)

            output_path = self._config.report_path
            wb.save(output_path)

            logger.info(f"Excel report saved to: {output_path}")
            return output_path

        except Exception as e:
            logger.error(f"Failed to generate Excel report: {e}")
            raise ReportGeneratorError(f"Report generation failed: {e}") from e

    def _write_sheet(self, ws: Worksheet, columns: list[dict], rows: list[list[Any]]) -> None:
        for col_idx, column in enumerate(columns, 1):
            cell = ws.cell(row=1, column=col_idx, value=column["header"])
            cell.font = self.HEADER_FONT
            cell.fill = self.HEADER_FILL
            cell.alignment = self.HEADER_ALIGNMENT
            cell.border = self.CELL_BORDER
            ws.column_dimensions[get_column_letter(col_idx)].width = column["width"]

        ws.row_dimensions[1].height = 30

        for row_idx, row_data in enumerate(rows, 2):
            fill = self.ROW_FILL_ODD if row_idx % 2 == 0 else self.ROW_FILL_EVEN
            for col_idx, value in enumerate(row_data, 1):
                cell = ws.cell(row=row_idx, column=col_idx, value=value)
                cell.alignment = self.CELL_ALIGNMENT
                cell.border = self.CELL_BORDER
                cell.fill = fill

        ws.freeze_panes = "A2"

    def _highlight_auto_closed(self, ws: Worksheet, row_count: int) -> None:
        column = next(
            idx for idx, c in enumerate(RESULT_COLUMNS, 1) if c["header"] == "Auto-Closed"
        )
        for row_idx in range(2, row_count + 2):
            cell = ws.cell(row=row_idx, column=column)
            if cell.value == "Yes":
                cell.font = self.AUTO_CLOSED_FONT


def generate_report(
    suggestions: list[AgentSuggestion],
    tickets: dict[str, Ticket],
    audit_entries: list[AuditLogEntry],
    config: OutputConfig,
) -> Path:
    """
    Convenience function to generate the triage report.

    Returns:
        Path to generated report.
    """
    generator = ExcelReportGenerator(config)
    return generator.generate(suggestions, tickets, audit_entries)

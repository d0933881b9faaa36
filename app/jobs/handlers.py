"""
Job Handlers

Handler functions for each job type, and the registry that maps a job type to
its handler. Each handler receives the job payload and a JobContext and
returns a JobOutput describing a file in its scratch directory, or None when
the job produces no artifact.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from app.jobs.job_types import PDF_MIME, XLSX_MIME, JobOutput, JobStatus
from app.jobs.runner import HandlerSpec, JobContext
from app.jobs.utils import ProgressTracker
from app.storage_service import ArtifactNotFoundError

logger = logging.getLogger(__name__)

LOT_COLUMNS = ["cartellino", "lot", "data_inserimento", "riferimento_originale", "codice_articolo", "paia"]
LOT_HEADERS = ["Cartellino", "Lotto", "Data Inserimento", "Riferimento Originale", "Codice Articolo", "Paia"]


# ============================================================================
# Shared rendering helpers
# ============================================================================

def _render_table_pdf(
    path: str,
    title: str,
    subtitle: str,
    headers: Sequence[str],
    rows: Sequence[Sequence[Any]],
    wide: bool = False
) -> None:
    """Write a simple title + table PDF."""
    styles = getSampleStyleSheet()
    doc = SimpleDocTemplate(path, pagesize=landscape(A4) if wide else A4, title=title)

    story = [
        Paragraph(title, styles["Title"]),
        Paragraph(subtitle, styles["Normal"]),
        Spacer(1, 12),
    ]

    if rows:
        table = Table([list(headers)] + [["" if v is None else str(v) for v in row] for row in rows], repeatRows=1)
        table.setStyle(TableStyle([
            ("BACKGROUND", (0, 0), (-1, 0), colors.lightgrey),
            ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
            ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
            ("FONTSIZE", (0, 0), (-1, -1), 8),
        ]))
        story.append(table)
    else:
        story.append(Paragraph("No data for the selected filters.", styles["Italic"]))

    doc.build(story)


def _fetch_lot_rows(ctx: JobContext, lots: List[str]) -> List[List[Any]]:
    db = ctx.require_db()
    result = db.table("tracking_links")\
        .select("*")\
        .in_("lot", lots)\
        .order("cartellino")\
        .execute()
    return [[row.get(col) for col in LOT_COLUMNS] for row in result.data or []]


def _require_lots(payload: Dict[str, Any]) -> List[str]:
    lots = payload.get("lots") or []
    if not isinstance(lots, list) or not lots:
        raise ValueError("lots is required")
    return [str(lot) for lot in lots]


# ============================================================================
# report.pdf
# ============================================================================

def handle_report_pdf(payload: Dict[str, Any], ctx: JobContext) -> JobOutput:
    """Generic PDF report over a period (`range`, e.g. "2024-01")."""
    period = payload.get("range")
    if not period:
        raise ValueError("range is required")

    title = payload.get("title") or "Report"
    rows = payload.get("rows") or []
    headers = payload.get("headers") or ([f"Col {i + 1}" for i in range(len(rows[0]))] if rows else [])

    file_name = "report.pdf"
    full_path = ctx.ensure_output_path(file_name)
    _render_table_pdf(
        full_path,
        title,
        f"Period: {period} - generated {datetime.utcnow():%Y-%m-%d %H:%M} UTC",
        headers,
        rows,
    )
    return ctx.finish_output(full_path, file_name, PDF_MIME)


# ============================================================================
# prod.report-pdf
# ============================================================================

def handle_prod_report_pdf(payload: Dict[str, Any], ctx: JobContext) -> JobOutput:
    """
    Daily production report. Uses the `production` service when one is
    registered, otherwise lists the `produzione` rows of the day.
    """
    day = payload.get("date")
    if not day:
        raise ValueError("date is required")
    datetime.strptime(day, "%Y-%m-%d")

    file_name = f"PRODUZIONE_{day}.pdf"
    full_path = ctx.ensure_output_path(file_name)

    production = ctx.services.get("production")
    if production is not None:
        pdf_bytes = production.generate_pdf(day)
        with open(full_path, "wb") as fh:
            fh.write(pdf_bytes)
    else:
        result = ctx.require_db().table("produzione")\
            .select("*")\
            .eq("data", day)\
            .order("reparto")\
            .execute()
        rows = [
            [r.get("reparto"), r.get("linea"), r.get("articolo"), r.get("paia")]
            for r in result.data or []
        ]
        _render_table_pdf(full_path, "Produzione", f"Giorno {day}", ["Reparto", "Linea", "Articolo", "Paia"], rows)

    return ctx.finish_output(full_path, file_name, PDF_MIME)


# ============================================================================
# track.report-lot-excel / track.report-lot-pdf
# ============================================================================

def handle_track_report_lot_excel(payload: Dict[str, Any], ctx: JobContext) -> JobOutput:
    """Packing list of the given lots as an Excel workbook."""
    lots = _require_lots(payload)
    tracker = ProgressTracker([("loading", 30), ("writing", 60), ("saving", 10)])

    ctx.update_progress(tracker.start("loading"))
    rows = _fetch_lot_rows(ctx, lots)
    ctx.log(f"Found {len(rows)} rows for {len(lots)} lots")

    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Packing List Lotti"
    sheet.append(LOT_HEADERS)
    for cell in sheet[1]:
        cell.font = Font(bold=True)
        cell.fill = PatternFill("solid", fgColor="FFCCCCCC")

    for i, row in enumerate(rows):
        sheet.append(row)
        if i % 500 == 0:
            ctx.update_progress(tracker.progress("writing", i, len(rows)))

    ctx.update_progress(tracker.start("saving"))
    file_name = f"packing_list_lotti_{datetime.utcnow():%Y-%m-%d}.xlsx"
    full_path = ctx.ensure_output_path(file_name)
    workbook.save(full_path)
    return ctx.finish_output(full_path, file_name, XLSX_MIME)


def handle_track_report_lot_pdf(payload: Dict[str, Any], ctx: JobContext) -> JobOutput:
    """Packing list of the given lots as a PDF."""
    lots = _require_lots(payload)
    rows = _fetch_lot_rows(ctx, lots)

    file_name = f"packing_list_lotti_{datetime.utcnow():%Y-%m-%d}.pdf"
    full_path = ctx.ensure_output_path(file_name)
    _render_table_pdf(full_path, "Packing List Lotti", ", ".join(lots), LOT_HEADERS, rows, wide=True)
    return ctx.finish_output(full_path, file_name, PDF_MIME)


# ============================================================================
# jobs.purge-finished
# ============================================================================

def handle_purge_finished_jobs(payload: Dict[str, Any], ctx: JobContext) -> Optional[JobOutput]:
    """
    Delete the owner's finished jobs older than `older_than_days`, artifacts
    first. Produces no artifact.
    """
    days = int(payload.get("older_than_days", 30))
    if days < 1:
        raise ValueError("older_than_days must be at least 1")
    cutoff = (datetime.utcnow() - timedelta(days=days)).isoformat()

    db = ctx.require_db()
    result = db.table("jobs")\
        .select("id, output_path")\
        .eq("owner_id", ctx.owner_id)\
        .in_("status", [JobStatus.DONE.value, JobStatus.FAILED.value])\
        .lt("finished_at", cutoff)\
        .execute()

    purged = 0
    for row in result.data or []:
        if row["id"] == ctx.job_id:
            continue
        if row.get("output_path"):
            try:
                ctx.storage.delete(row["output_path"])
            except ArtifactNotFoundError:
                pass
        db.table("jobs").delete().eq("id", row["id"]).execute()
        purged += 1

    ctx.log(f"Purged {purged} finished jobs older than {days} days")
    return None


# ============================================================================
# Registry
# ============================================================================

JOB_HANDLERS: Dict[str, HandlerSpec] = {
    "report.pdf": HandlerSpec(handle_report_pdf),
    "prod.report-pdf": HandlerSpec(handle_prod_report_pdf),
    "track.report-lot-excel": HandlerSpec(handle_track_report_lot_excel),
    "track.report-lot-pdf": HandlerSpec(handle_track_report_lot_pdf),
    "jobs.purge-finished": HandlerSpec(handle_purge_finished_jobs, retryable=False),
}

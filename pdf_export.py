"""
PDF rendering for transaction reports and AI-generated books.
"""

import logging
import re
from datetime import datetime, timezone
from io import BytesIO
from typing import Any, Dict, List, Optional
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.colors import HexColor
from reportlab.lib.enums import TA_CENTER, TA_JUSTIFY
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle

import transactions as tx
from config import settings

logger = logging.getLogger(__name__)

TRANSACTION_COLUMNS = ["Date", "User", "Book", "Author", "Action", "Due Date", "Late Fee"]


def _styles():
    styles = getSampleStyleSheet()
    styles.add(ParagraphStyle(
        name='ReportTitle',
        parent=styles['Title'],
        fontSize=20,
        textColor=HexColor('#1a1a1a'),
        spaceAfter=8,
        alignment=TA_CENTER,
        fontName='Helvetica-Bold'
    ))
    styles.add(ParagraphStyle(
        name='ReportMeta',
        parent=styles['Normal'],
        fontSize=9,
        textColor=HexColor('#4a4a4a'),
        alignment=TA_CENTER,
        spaceAfter=4
    ))
    styles.add(ParagraphStyle(
        name='Cell',
        parent=styles['Normal'],
        fontSize=8,
        leading=10
    ))
    styles.add(ParagraphStyle(
        name='BookBody',
        parent=styles['Normal'],
        fontSize=12,
        leading=16,
        alignment=TA_JUSTIFY,
        spaceAfter=10
    ))
    return styles


def _format_date(value: Optional[str]) -> str:
    if not value:
        return "-"
    try:
        return datetime.fromisoformat(value).strftime("%b %d, %Y %H:%M")
    except ValueError:
        return value


def pdf_filename(title: str) -> str:
    """File name for a generated PDF: non-alphanumerics become underscores."""
    return f"{re.sub(r'[^a-z0-9]', '_', (title or 'document').lower())}.pdf"


def transactions_pdf(transactions: List[tx.Transaction], books: Dict[str, Dict[str, Any]],
                     users: Dict[str, Dict[str, Any]], title: str, generated_for: Optional[str] = None,
                     shown: Optional[List[tx.Transaction]] = None, now: Optional[datetime] = None) -> bytes:
    """Render a transaction report: header, summary line and one table row per transaction.

    Late fees are computed against the full ``transactions`` history; ``shown`` limits
    the rows printed, for filtered reports.
    """
    now = now or datetime.now(timezone.utc)
    styles = _styles()
    selected = transactions if shown is None else shown
    shown_ids = {t.id for t in selected}
    rows = [row for row in tx.transaction_rows(transactions, books, users, now) if row["id"] in shown_ids]
    counts = tx.action_counts(selected)
    overdue = sum(1 for row in rows if row["is_overdue"])
    fines = sum(row["late_fee"] for row in rows)

    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=landscape(A4),
        leftMargin=0.5 * inch,
        rightMargin=0.5 * inch,
        topMargin=0.5 * inch,
        bottomMargin=0.5 * inch,
        title=title,
        author=settings.app_name,
    )

    story = [Paragraph(escape(title), styles['ReportTitle'])]
    meta = f"Generated {now.strftime('%b %d, %Y %H:%M')} UTC"
    if generated_for:
        meta += f" for {escape(tx.user_label(generated_for, users))}"
    story.append(Paragraph(meta, styles['ReportMeta']))
    story.append(Paragraph(
        f"{len(rows)} transactions: {counts['issues']} issues, {counts['returns']} returns, "
        f"{counts['renewals']} renewals. Overdue: {overdue}. "
        f"Total fines: {escape(settings.currency_symbol)}{fines}",
        styles['ReportMeta']
    ))
    story.append(Spacer(1, 0.2 * inch))

    if not rows:
        story.append(Paragraph("No transactions found.", styles['Normal']))
    else:
        cell = styles['Cell']
        data = [TRANSACTION_COLUMNS]
        for row in rows:
            data.append([
                _format_date(row["transaction_date"]),
                Paragraph(escape(row["user"]), cell),
                Paragraph(escape(row["book_title"]), cell),
                Paragraph(escape(row["book_author"]), cell),
                row["action"].capitalize(),
                _format_date(row["due_date"]),
                f"{settings.currency_symbol}{row['late_fee']}" if row["late_fee"] else "-",
            ])
        table = Table(
            data,
            colWidths=[1.3 * inch, 1.7 * inch, 2.4 * inch, 1.6 * inch, 0.8 * inch, 1.3 * inch, 0.8 * inch],
            repeatRows=1,
        )
        table.setStyle(TableStyle([
            ('BACKGROUND', (0, 0), (-1, 0), HexColor('#2c3e50')),
            ('TEXTCOLOR', (0, 0), (-1, 0), colors.white),
            ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 0), (-1, -1), 8),
            ('VALIGN', (0, 0), (-1, -1), 'TOP'),
            ('GRID', (0, 0), (-1, -1), 0.25, colors.grey),
            ('ROWBACKGROUNDS', (0, 1), (-1, -1), [colors.white, HexColor('#f4f6f8')]),
        ]))
        story.append(table)

    doc.build(story)
    logger.info(f"Rendered transaction PDF '{title}' with {len(rows)} rows")
    return buffer.getvalue()


def book_pdf(title: str, description: str) -> bytes:
    """Render a generated book: the title, then each description paragraph."""
    styles = _styles()
    buffer = BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A4, leftMargin=inch, rightMargin=inch,
                            topMargin=inch, bottomMargin=inch, title=title, author=settings.app_name)
    story = [Paragraph(escape(title), styles['ReportTitle']), Spacer(1, 0.3 * inch)]
    for paragraph in re.split(r"\n\s*\n", description or ""):
        paragraph = paragraph.strip()
        if paragraph:
            story.append(Paragraph(escape(paragraph).replace("\n", "<br/>"), styles['BookBody']))
    doc.build(story)
    return buffer.getvalue()

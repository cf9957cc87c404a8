# backend/consultflow/integrations/invoice_pdf.py
"""
Plain-text invoice PDF rendering.

Builds a single-font (Courier) PDF by hand and stores it under
``settings.invoice_pdf_dir``; the path is recorded on the invoice.
"""

from __future__ import annotations

from decimal import Decimal
import io
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from consultflow.core.config import settings
from consultflow.core.enums import DocumentKind
from consultflow.core.exceptions import NotFoundException
from consultflow.repositories.factory import RepositoryFactory

logger = logging.getLogger(__name__)

_COLUMNS: List[Dict[str, Any]] = [
    {"label": "Date", "width": 12, "align": "left"},
    {"label": "Description", "width": 36, "align": "left"},
    {"label": "Amount", "width": 12, "align": "right"},
    {"label": "Tax", "width": 10, "align": "right"},
]


def _fit_cell(text: str, width: int, align: str) -> str:
    if len(text) > width:
        text = text[:width] if width <= 3 else f"{text[: width - 3]}..."
    return text.rjust(width) if align == "right" else text.ljust(width)


def _format_row(values: List[str]) -> str:
    return " ".join(_fit_cell(value, col["width"], col["align"]) for value, col in zip(values, _COLUMNS))


def _money(value: Optional[Decimal], currency: str) -> str:
    return f"{Decimal(value or 0):.2f} {currency}"


def escape_pdf_text(value: str) -> str:
    sanitized = value.encode("ascii", "replace").decode("ascii")
    return (
        sanitized.replace("\\", "\\\\")
        .replace("(", "\\(")
        .replace(")", "\\)")
        .replace("\r", "")
        .replace("\n", " ")
    )


def build_pdf(header: List[str], data_lines: List[str]) -> bytes:
    page_width = 612
    page_height = 792
    left_margin = 40
    top_margin = 742
    line_height = 12
    font_size = 9
    lines_per_page = max(1, int((top_margin - 72) / line_height))
    data_per_page = max(1, lines_per_page - len(header))

    pages: List[List[str]] = []
    if not data_lines:
        pages = [header + [""]]
    else:
        for idx in range(0, len(data_lines), data_per_page):
            pages.append(header + data_lines[idx : idx + data_per_page])

    page_obj_nums = [4 + i * 2 for i in range(len(pages))]
    content_obj_nums = [5 + i * 2 for i in range(len(pages))]
    kids = " ".join(f"{num} 0 R" for num in page_obj_nums)

    objects: List[bytes] = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        f"<< /Type /Pages /Kids [{kids}] /Count {len(pages)} >>".encode("ascii"),
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Courier >>",
    ]

    for page_index, page_lines in enumerate(pages):
        objects.append(
            (
                f"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 {page_width} {page_height}] "
                f"/Resources << /Font << /F1 3 0 R >> >> /Contents {content_obj_nums[page_index]} 0 R >>"
            ).encode("ascii")
        )
        content_lines = ["BT", f"/F1 {font_size} Tf", f"{left_margin} {top_margin} Td"]
        for line_index, line in enumerate(page_lines):
            if line_index > 0:
                content_lines.append(f"0 -{line_height} Td")
            content_lines.append(f"({escape_pdf_text(line)}) Tj")
        content_lines.append("ET")
        stream = "\n".join(content_lines).encode("ascii")
        objects.append(f"<< /Length {len(stream)} >>\nstream\n".encode("ascii") + stream + b"\nendstream")

    buffer = io.BytesIO()
    buffer.write(b"%PDF-1.4\n")
    offsets = [0]
    for index, obj in enumerate(objects, start=1):
        offsets.append(buffer.tell())
        buffer.write(f"{index} 0 obj\n".encode("ascii"))
        buffer.write(obj)
        buffer.write(b"\nendobj\n")

    xref_offset = buffer.tell()
    buffer.write(f"xref\n0 {len(objects) + 1}\n".encode("ascii"))
    buffer.write(b"0000000000 65535 f \n")
    for offset in offsets[1:]:
        buffer.write(f"{offset:010d} 00000 n \n".encode("ascii"))
    buffer.write(b"trailer\n")
    buffer.write(f"<< /Size {len(objects) + 1} /Root 1 0 R >>\n".encode("ascii"))
    buffer.write(b"startxref\n")
    buffer.write(f"{xref_offset}\n".encode("ascii"))
    buffer.write(b"%%EOF")
    return buffer.getvalue()


class InvoicePdfRenderer:
    """InvoicePdfGenerator writing to the local invoice directory."""

    def __init__(self, db: Session, output_dir: Optional[str] = None) -> None:
        self.db = db
        self.invoice_repository = RepositoryFactory.create_invoice_repository(db)
        self.bill_repository = RepositoryFactory.create_bill_repository(db)
        self.output_dir = Path(output_dir or settings.invoice_pdf_dir)

    def render(self, invoice_id: str) -> bytes:
        invoice = self.invoice_repository.get_by_id(invoice_id)
        if invoice is None:
            raise NotFoundException(f"Invoice {invoice_id} not found")

        title = "CREDIT NOTE" if invoice.document_kind == DocumentKind.CREDIT_NOTE.value else "INVOICE"
        header = [
            f"{title} {invoice.display_number or '(draft)'}",
            f"Client: {invoice.client_name} <{invoice.client_email}>",
            f"Issued: {invoice.issued_at.date().isoformat() if invoice.issued_at else '-'}",
        ]
        if invoice.rectifies_invoice_id:
            original = self.invoice_repository.get_by_id(invoice.rectifies_invoice_id)
            header.append(f"Rectifies: {original.display_number if original else invoice.rectifies_invoice_id}")
        header_row = _format_row([col["label"] for col in _COLUMNS])
        header += ["", header_row, "-" * len(header_row)]

        lines: List[str] = []
        for bill in self.bill_repository.get_for_invoice(invoice.id):
            booking = bill.booking
            lines.append(
                _format_row(
                    [
                        booking.start_time.date().isoformat() if booking else "",
                        "Consultation",
                        _money(bill.amount, bill.currency),
                        _money(bill.tax_amount, bill.currency),
                    ]
                )
            )
        if not lines:
            lines.append(_format_row(["", invoice.rectification_reason or "Consultation", "", ""]))
        lines += [
            "",
            f"Subtotal: {_money(invoice.subtotal, invoice.currency)}",
            f"Tax:      {_money(invoice.tax_total, invoice.currency)}",
            f"Total:    {_money(invoice.total, invoice.currency)}",
        ]
        return build_pdf(header, lines)

    def generate_and_store(self, invoice_id: str) -> Optional[str]:
        pdf = self.render(invoice_id)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / f"{invoice_id}.pdf"
        path.write_bytes(pdf)
        self.invoice_repository.update(invoice_id, pdf_path=str(path))
        logger.info("Invoice PDF stored at %s", path)
        return str(path)

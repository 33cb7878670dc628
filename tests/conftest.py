"""Shared fixtures: small certificate PDFs rendered with reportlab."""

from __future__ import annotations

import io

import pytest
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas


def render_pdf(
    text: str = "Certificate of Completion",
    pagesize: tuple[float, float] = A4,
    pages: int = 1,
) -> bytes:
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=pagesize, invariant=1)
    for number in range(1, pages + 1):
        c.setFont("Helvetica", 12)
        c.drawString(36, pagesize[1] - 48, f"{text} (page {number})")
        c.showPage()
    c.save()
    return buf.getvalue()


@pytest.fixture
def pdf_document() -> bytes:
    return render_pdf()


@pytest.fixture
def make_pdf():
    return render_pdf

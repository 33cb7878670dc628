"""
deCertify — Document Processor

Stamps a verification marker onto a certificate PDF before it becomes
immutable in the content store.

The marker is the verification URL for the request, rendered as a vector
QR code in the bottom-right corner of the first page, inset by a fixed
margin. The same fields are written to XMP metadata so a verifier can read
them without interpreting page content.

The marker references the request id, not the content id. The content id
only exists after the stamped bytes are pushed, and the verification
endpoint resolves request id → canonical content id.

Output is deterministic: the stamp is rendered in reportlab's invariant
mode and the final PDF is saved with a content-derived /ID, so stamping the
same document twice yields identical bytes and therefore the same content id.

Trust boundary:
- This module does NOT interpret Document Content.
- The input bytes are never modified.
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import pikepdf
import qrcode
import structlog
from qrcode.exceptions import DataOverflowError
from reportlab.pdfgen import canvas

from decertify.issuance.types import VerificationPayload

if TYPE_CHECKING:
    from decertify.config import IssuanceConfig

logger = structlog.get_logger()

MARKER_NS = "https://decertify.org/ns/marker/1.0/"
_REQUEST_ID_KEY = f"{{{MARKER_NS}}}requestId"
_VERIFICATION_URL_KEY = f"{{{MARKER_NS}}}verificationUrl"

# PDF headers may be preceded by junk bytes; readers scan the first 1 KiB
_PDF_MAGIC = b"%PDF-"
_HEADER_SCAN_BYTES = 1024

# Quiet zone around the QR symbol, in modules
_QUIET_MODULES = 4
_CAPTION = "Scan to verify"
_CAPTION_FONT_SIZE = 6
_STAMP_RESOURCE = pikepdf.Name("/DecertifyMarker")


class DocumentError(RuntimeError):
    """Raised when a document cannot be stamped."""


class UnsupportedFormat(DocumentError):
    """The input is not a PDF."""


class MalformedDocument(DocumentError):
    """The input claims to be a PDF but cannot be parsed or stamped."""


class PayloadTooLarge(DocumentError):
    """The marker does not fit in a QR symbol of the configured size."""


class DocumentProcessor:
    """Embeds a VerificationPayload into page 1 of a PDF."""

    def __init__(
        self,
        max_marker_bytes: int = 512,
        marker_size_pt: float = 72.0,
        margin_pt: float = 24.0,
    ) -> None:
        self._max_marker_bytes = max_marker_bytes
        self._marker_size = marker_size_pt
        self._margin = margin_pt

    @classmethod
    def from_config(cls, config: IssuanceConfig) -> DocumentProcessor:
        return cls(
            max_marker_bytes=config.max_marker_bytes,
            marker_size_pt=config.marker_size_pt,
            margin_pt=config.marker_margin_pt,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def embed(self, document: bytes, marker: VerificationPayload) -> bytes:
        """
        Return a new PDF with `marker` stamped onto its first page.

        Raises:
            UnsupportedFormat: the input is not a PDF.
            MalformedDocument: the PDF cannot be parsed, has no pages, or
                its first page is too small to carry the marker.
            PayloadTooLarge: the marker cannot be encoded.
        """
        matrix = self._qr_matrix(marker)

        with self._open(document) as pdf:
            if len(pdf.pages) == 0:
                raise MalformedDocument("PDF has no pages")

            page = pdf.pages[0]
            box = pikepdf.Rectangle(page.mediabox)
            self._check_fits(box)

            stamp_bytes = self._render_stamp(matrix, box.width, box.height)
            with pikepdf.open(io.BytesIO(stamp_bytes)) as stamp:
                formx = pdf.copy_foreign(stamp.pages[0].as_form_xobject())
                self._place_stamp(pdf, page, formx, box)

            with pdf.open_metadata(set_pikepdf_as_editor=False) as meta:
                meta[_REQUEST_ID_KEY] = marker.request_id
                meta[_VERIFICATION_URL_KEY] = marker.verification_url

            out = io.BytesIO()
            try:
                pdf.save(out, deterministic_id=True)
            except pikepdf.PdfError as exc:
                raise MalformedDocument(f"Failed to write stamped PDF: {exc}") from exc

        stamped = out.getvalue()
        logger.debug(
            "document_stamped",
            request_id=marker.request_id,
            input_size=len(document),
            output_size=len(stamped),
        )
        return stamped

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _open(document: bytes) -> pikepdf.Pdf:
        if _PDF_MAGIC not in document[:_HEADER_SCAN_BYTES]:
            raise UnsupportedFormat("Only PDF documents are supported")
        try:
            # Work on a private copy; the caller's bytes stay untouched
            return pikepdf.open(io.BytesIO(bytes(document)))
        except pikepdf.PasswordError as exc:
            raise UnsupportedFormat("Encrypted PDFs are not supported") from exc
        except pikepdf.PdfError as exc:
            raise MalformedDocument(f"PDF could not be parsed: {exc}") from exc

    def _qr_matrix(self, marker: VerificationPayload) -> list[list[bool]]:
        text = marker.qr_text()
        if len(text.encode("utf-8")) > self._max_marker_bytes:
            raise PayloadTooLarge(
                f"Marker is {len(text.encode('utf-8'))} bytes, "
                f"limit is {self._max_marker_bytes}"
            )
        qr = qrcode.QRCode(
            version=None,
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            border=0,
        )
        qr.add_data(text)
        try:
            qr.make(fit=True)
        except (DataOverflowError, ValueError) as exc:
            # qrcode 8 reports data past version 40 as a ValueError
            raise PayloadTooLarge("Marker exceeds QR code capacity") from exc
        return qr.get_matrix()

    @staticmethod
    def _place_stamp(
        pdf: pikepdf.Pdf,
        page: pikepdf.Page,
        formx: pikepdf.Object,
        box: pikepdf.Rectangle,
    ) -> None:
        # Fixed resource name; Page.add_overlay picks a random one
        name = page.add_resource(formx, pikepdf.Name.XObject, name=_STAMP_RESOURCE)
        page.contents_add(b"q\n", prepend=True)
        draw = f"\nQ\nq 1 0 0 1 {float(box.llx):.4f} {float(box.lly):.4f} cm {name} Do Q\n"
        page.contents_add(pdf.make_stream(draw.encode("ascii")))

    def _check_fits(self, box: pikepdf.Rectangle) -> None:
        needed = self._marker_size + 2 * self._margin
        if box.width < needed or box.height < needed:
            raise MalformedDocument(
                f"First page ({box.width:.0f}x{box.height:.0f}pt) is too small "
                f"for a {self._marker_size:.0f}pt marker"
            )

    def _render_stamp(self, matrix: list[list[bool]], width: float, height: float) -> bytes:
        """One transparent page the size of the target, with the QR in the bottom-right corner."""
        buf = io.BytesIO()
        c = canvas.Canvas(buf, pagesize=(width, height), invariant=1)

        size = self._marker_size
        module = size / (len(matrix) + 2 * _QUIET_MODULES)
        quiet = module * _QUIET_MODULES
        x0 = width - self._margin - size
        y0 = self._margin

        c.setFillColorRGB(1, 1, 1)
        c.rect(x0, y0, size, size, stroke=0, fill=1)

        c.setFillColorRGB(0, 0, 0)
        for row_index, row in enumerate(matrix):
            y = y0 + size - quiet - (row_index + 1) * module
            for col_index, dark in enumerate(row):
                if dark:
                    c.rect(x0 + quiet + col_index * module, y, module, module, stroke=0, fill=1)

        c.setFont("Helvetica", _CAPTION_FONT_SIZE)
        c.drawCentredString(x0 + size / 2, y0 - _CAPTION_FONT_SIZE - 2, _CAPTION)

        c.showPage()
        c.save()
        return buf.getvalue()


def extract_marker(document: bytes) -> VerificationPayload | None:
    """
    Read the verification marker back from a stamped PDF's metadata.

    Returns None for PDFs without a marker. Raises the same format errors as
    DocumentProcessor.embed for inputs that are not readable PDFs.
    """
    with DocumentProcessor._open(document) as pdf:
        meta = pdf.open_metadata()
        request_id = meta.get(_REQUEST_ID_KEY)
        url = meta.get(_VERIFICATION_URL_KEY)
    if not request_id or not url:
        return None
    return VerificationPayload(request_id=str(request_id), verification_url=str(url))

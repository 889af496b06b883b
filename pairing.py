"""PDF carrying the WhatsApp pairing QR code, sent to the admin chat."""
import io

import segno
from fpdf import FPDF

PAGE_WIDTH = 600
PAGE_HEIGHT = 800
QR_SIZE = 300


def render_qr_png(data: str, scale: int = 10) -> bytes:
    buffer = io.BytesIO()
    segno.make(data, error='m').save(buffer, kind='png', scale=scale, border=2)
    return buffer.getvalue()


def render_qr_pdf(data: str) -> bytes:
    """One page with the QR code centered on it."""
    pdf = FPDF(unit="pt", format=(PAGE_WIDTH, PAGE_HEIGHT))
    pdf.set_title("WhatsApp pairing")
    pdf.add_page()
    pdf.image(
        io.BytesIO(render_qr_png(data)),
        x=(PAGE_WIDTH - QR_SIZE) / 2,
        y=(PAGE_HEIGHT - QR_SIZE) / 2,
        w=QR_SIZE,
        h=QR_SIZE,
    )
    return bytes(pdf.output())

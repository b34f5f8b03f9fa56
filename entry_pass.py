"""Entry pass rendering: a PNG with the ticket QR code and the holder's details."""
import logging
from io import BytesIO
from typing import Any, Dict

import qrcode
from PIL import Image, ImageDraw, ImageFont

logger = logging.getLogger(__name__)

PASS_WIDTH = 360
LINE_HEIGHT = 18
MARGIN = 12


def make_qr_image(data: str) -> Image.Image:
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=8,
        border=4,
    )
    qr.add_data(data)
    qr.make(fit=True)
    return qr.make_image(fill_color="black", back_color="white").convert("RGB")


def render_entry_pass(ticket: Dict[str, Any], title: str = "EVENT ENTRY PASS") -> bytes:
    """
    Render the pass for a resolved ticket view (see ticket_resolver.ticket_view).

    CPU-bound; call through asyncio.to_thread from request handlers.
    """
    ticket_code = str(ticket.get("ticket_code") or "")
    lines = [
        title,
        f"Name: {ticket.get('name') or ''}",
        f"Email: {ticket.get('email') or ''}",
        f"Company: {ticket.get('company') or ''}",
    ]
    if ticket.get("category"):
        lines.append(f"Category: {ticket['category']}")
    lines.append(f"Ticket: {ticket_code}")

    qr_image = make_qr_image(ticket_code)
    if qr_image.width > PASS_WIDTH - 2 * MARGIN:
        side = PASS_WIDTH - 2 * MARGIN
        qr_image = qr_image.resize((side, side))

    height = MARGIN + len(lines) * LINE_HEIGHT + MARGIN + qr_image.height + MARGIN
    canvas = Image.new("RGB", (PASS_WIDTH, height), "white")
    draw = ImageDraw.Draw(canvas)
    font = ImageFont.load_default()

    y = MARGIN
    for line in lines:
        draw.text((MARGIN, y), line, fill="black", font=font)
        y += LINE_HEIGHT
    canvas.paste(qr_image, ((PASS_WIDTH - qr_image.width) // 2, y + MARGIN))

    buffer = BytesIO()
    canvas.save(buffer, format="PNG")
    logger.debug(f"Rendered entry pass for ticket '{ticket_code}' ({len(buffer.getvalue())} bytes).")
    return buffer.getvalue()

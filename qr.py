"""QR code urls and images."""

import base64
import io
from typing import Optional

import qrcode
from qrcode.image.svg import SvgPathImage


def qr_code_url(base_url: str, qr_code: Optional[str]) -> Optional[str]:
    """Public finder url encoded in a tag's QR code."""
    if not qr_code:
        return None
    return f"{base_url}{qr_code}"


def render_qr_svg(data: str) -> str:
    """Render `data` as an SVG QR code and return it as a data url."""
    qr = qrcode.QRCode(border=2, box_size=10, image_factory=SvgPathImage)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image()
    buf = io.BytesIO()
    img.save(buf)
    encoded = base64.b64encode(buf.getvalue()).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"

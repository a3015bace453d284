# services/qr_service.py
import base64
import io
import logging

import qrcode
from qrcode.constants import ERROR_CORRECT_M

from models.errors import QRGenerationFailed

logger = logging.getLogger(__name__)


class QRCodeService:
    """Renders the session upload URL as a PNG QR code"""

    def __init__(self, box_size: int = 8, border: int = 1):
        self.box_size = box_size
        self.border = border

    def render(self, data: str) -> bytes:
        try:
            qr = qrcode.QRCode(
                error_correction=ERROR_CORRECT_M,
                box_size=self.box_size,
                border=self.border,
            )
            qr.add_data(data)
            qr.make(fit=True)
            image = qr.make_image(fill_color="black", back_color="white")

            buffer = io.BytesIO()
            image.save(buffer, format="PNG")
        except Exception as e:
            logger.error(f"QR code generation failed: {e}")
            raise QRGenerationFailed(f"Failed to generate QR code: {e}")

        logger.debug(f"QR code generated for {len(data)} characters of data")
        return buffer.getvalue()

    def render_data_url(self, data: str) -> str:
        png = self.render(data)
        return "data:image/png;base64," + base64.b64encode(png).decode("ascii")

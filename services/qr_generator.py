"""QR code generation for authenticator app enrollment"""

import base64
import logging
from io import BytesIO

import qrcode
import qrcode.constants
from qrcode.main import QRCode

logger = logging.getLogger(__name__)


class QRCodeService:
    """Renders otpauth:// provisioning URIs as PNG data URLs"""

    @classmethod
    def generate_qr_code(cls, data: str, size: int = 8, border: int = 4) -> str:
        """Generate a QR code and return it as base64 encoded PNG"""
        if not data:
            raise ValueError("QR code data is required")

        qr = QRCode(
            version=None,  # Auto-determine version based on data length
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=size,
            border=border,
        )
        qr.add_data(data)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")

        buffered = BytesIO()
        img.save(buffered, format="PNG")
        return base64.b64encode(buffered.getvalue()).decode()

    @classmethod
    def generate_data_url(cls, data: str, size: int = 8, border: int = 4) -> str:
        """QR code as a data: URL an <img> tag can display directly"""
        img_base64 = cls.generate_qr_code(data, size=size, border=border)
        logger.debug(f"QR code generated ({len(img_base64)} base64 chars)")
        return f"data:image/png;base64,{img_base64}"

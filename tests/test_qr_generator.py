"""QR code rendering for authenticator enrollment"""

import base64

import pytest

from services.qr_generator import QRCodeService

PROVISIONING_URI = "otpauth://totp/HustleKE:client%40example.com?secret=JBSWY3DPEHPK3PXP&issuer=HustleKE"


class TestQRCodeService:

    def test_generates_png(self):
        encoded = QRCodeService.generate_qr_code(PROVISIONING_URI)
        assert base64.b64decode(encoded).startswith(b"\x89PNG\r\n\x1a\n")

    def test_data_url(self):
        url = QRCodeService.generate_data_url(PROVISIONING_URI)
        assert url.startswith("data:image/png;base64,")
        assert base64.b64decode(url.split(",", 1)[1]).startswith(b"\x89PNG")

    def test_box_size_changes_output(self):
        small = QRCodeService.generate_qr_code(PROVISIONING_URI, size=2)
        large = QRCodeService.generate_qr_code(PROVISIONING_URI, size=10)
        assert len(base64.b64decode(large)) > len(base64.b64decode(small))

    def test_empty_data_rejected(self):
        with pytest.raises(ValueError):
            QRCodeService.generate_qr_code("")

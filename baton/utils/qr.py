"""
QR code generation utility.
"""
import base64
import io
import json

import qrcode


def generate_qr_base64(data, box_size=10, border=2):
    """
    Generate a QR code from data and return it as a base64-encoded PNG string.
    Dict payloads are serialized to compact JSON first.
    """
    if isinstance(data, dict):
        data = json.dumps(data, separators=(',', ':'), sort_keys=True)

    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format='PNG')

    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    return f"data:image/png;base64,{img_base64}"

"""
Capsule - QR codes for signaling blobs

Offer and answer blobs can be carried between devices as QR codes instead of
copy/paste. Requires the optional "qr" extra: qrcode and pillow to generate,
pyzbar (plus the zbar system library) to scan.

Install with: pip install capsule[qr]

Author: orpheus497
Version: 1.0.0
"""

import logging
from pathlib import Path
from typing import List

from .errors import ErrorCode, MalformedBlob, QRCodeError
from .signaling import SignalingBlob

logger = logging.getLogger(__name__)

# Try to import optional dependencies
try:
    import qrcode

    QRCODE_AVAILABLE = True
except ImportError:
    QRCODE_AVAILABLE = False
    logger.debug("qrcode not available - QR code generation disabled")

try:
    from PIL import Image

    PIL_AVAILABLE = True
except ImportError:
    PIL_AVAILABLE = False
    logger.debug("pillow not available - PNG export disabled")

try:
    from pyzbar import pyzbar

    PYZBAR_AVAILABLE = True
except ImportError:
    PYZBAR_AVAILABLE = False
    logger.debug("pyzbar not available - QR code scanning disabled")


def is_qr_available() -> bool:
    """Check if QR code generation is available."""
    return QRCODE_AVAILABLE


def is_scan_available() -> bool:
    """Check if QR code scanning is available."""
    return PYZBAR_AVAILABLE and PIL_AVAILABLE


def generate_qr_code(data: str, error_correction: str = "L", border: int = 2) -> "qrcode.QRCode":
    """Generate a QR code from data.

    Signaling blobs run to a few kilobytes, so the default error correction
    level is the lowest one to keep the symbol scannable.

    Args:
        data: Data to encode
        error_correction: Error correction level (L, M, Q, H)
        border: Quiet zone in modules

    Returns:
        QR code object

    Raises:
        QRCodeError: If qrcode is missing or the data does not fit
    """
    if not QRCODE_AVAILABLE:
        raise QRCodeError(
            ErrorCode.E901_QR_UNAVAILABLE,
            "QR code generation not available - install capsule[qr]",
        )

    error_levels = {
        "L": qrcode.constants.ERROR_CORRECT_L,
        "M": qrcode.constants.ERROR_CORRECT_M,
        "Q": qrcode.constants.ERROR_CORRECT_Q,
        "H": qrcode.constants.ERROR_CORRECT_H,
    }

    try:
        qr = qrcode.QRCode(
            version=None,
            error_correction=error_levels.get(error_correction, qrcode.constants.ERROR_CORRECT_L),
            box_size=10,
            border=border,
        )
        qr.add_data(data)
        qr.make(fit=True)
    except Exception as e:
        raise QRCodeError(
            message=f"QR code generation failed: {e}", details={"error": str(e), "size": len(data)}
        )

    logger.debug(f"Generated QR code version {qr.version} for {len(data)} bytes")
    return qr


def render_terminal(qr: "qrcode.QRCode") -> str:
    """Render a QR code with half-block characters, two modules per line.

    Dark modules are drawn as spaces on a light background so the symbol
    scans on dark terminal themes.
    """
    matrix: List[List[bool]] = qr.get_matrix()
    if len(matrix) % 2:
        matrix = matrix + [[False] * len(matrix[0])]

    glyphs = {
        (False, False): "█",
        (True, False): "▄",
        (False, True): "▀",
        (True, True): " ",
    }

    lines = []
    for top, bottom in zip(matrix[0::2], matrix[1::2]):
        lines.append("".join(glyphs[(upper, lower)] for upper, lower in zip(top, bottom)))
    return "\n".join(lines)


def export_qr_png(qr: "qrcode.QRCode", output_path: Path) -> Path:
    """Save a QR code as a PNG image.

    Raises:
        QRCodeError: If pillow is missing or the image cannot be written
    """
    if not PIL_AVAILABLE:
        raise QRCodeError(ErrorCode.E901_QR_UNAVAILABLE, "PNG export not available - install pillow")

    output_path = Path(output_path)
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        qr.make_image(fill_color="black", back_color="white").save(str(output_path))
    except Exception as e:
        raise QRCodeError(message=f"PNG export failed: {e}", details={"error": str(e)})

    logger.info(f"Exported QR code to: {output_path}")
    return output_path


def blob_to_terminal(blob: str) -> str:
    """Terminal QR rendering of a signaling blob."""
    return render_terminal(generate_qr_code(blob))


def scan_blob(image_path: Path) -> str:
    """Read a signaling blob from an image of its QR code.

    Every QR code in the image is tried; the first one holding a valid
    blob wins.

    Raises:
        QRCodeError: If scanning is unavailable or no blob is found
    """
    if not is_scan_available():
        raise QRCodeError(
            ErrorCode.E901_QR_UNAVAILABLE,
            "QR code scanning not available - install capsule[qr] and the zbar library",
        )

    image_path = Path(image_path)
    if not image_path.exists():
        raise QRCodeError(
            ErrorCode.E003_FILE_NOT_FOUND,
            f"Image file not found: {image_path}",
            {"path": str(image_path)},
        )

    try:
        with Image.open(image_path) as image:
            decoded = pyzbar.decode(image)
    except Exception as e:
        raise QRCodeError(
            message=f"Failed to scan QR code: {e}", details={"error": str(e), "path": str(image_path)}
        )

    for symbol in decoded:
        try:
            text = symbol.data.decode("utf-8")
            SignalingBlob.decode(text)
        except (UnicodeDecodeError, MalformedBlob) as e:
            logger.debug(f"Skipping QR code that is not a signaling blob: {e}")
            continue
        logger.info(f"Decoded signaling blob from {image_path.name}: {len(text)} bytes")
        return text

    raise QRCodeError(
        ErrorCode.E902_QR_NOT_FOUND,
        "No signaling blob QR code found in image",
        {"path": str(image_path), "symbols": len(decoded)},
    )

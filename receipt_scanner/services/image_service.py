# receipt_scanner/services/image_service.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from receipt_scanner.config import Settings, get_settings
from receipt_scanner.errors import ImageValidationError
from receipt_scanner.logging_utils import get_logger

log = get_logger(__name__)

JPEG_QUALITY = 90

# Outline must cover this share of the photo before we trust the warp.
_MIN_OUTLINE_AREA = 0.25


@dataclass
class PreparedImage:
    content: bytes
    mime_type: str
    filename: str
    width: int
    height: int
    resized: bool = False
    rectified: bool = False


# -----------------------------------------------------------------------------
# Decode / encode
# -----------------------------------------------------------------------------

def _decode(content: bytes) -> Optional[np.ndarray]:
    buf = np.frombuffer(content, dtype=np.uint8)
    return cv2.imdecode(buf, cv2.IMREAD_COLOR)


def _encode_jpeg(bgr: np.ndarray) -> bytes:
    ok, out = cv2.imencode(".jpg", bgr, [int(cv2.IMWRITE_JPEG_QUALITY), JPEG_QUALITY])
    if not ok:
        raise ImageValidationError("Could not re-encode image")
    return out.tobytes()


def _jpeg_name(filename: str) -> str:
    stem, _ = os.path.splitext(filename or "receipt")
    return f"{stem or 'receipt'}.jpg"


# -----------------------------------------------------------------------------
# Resize policy: phones produce 3000-5000px photos, the vision model does not
# need more than a couple thousand.
# -----------------------------------------------------------------------------

def downscale(bgr: np.ndarray, max_dim: int) -> Tuple[np.ndarray, bool]:
    h, w = bgr.shape[:2]
    m = max(h, w)
    if max_dim <= 0 or m <= max_dim:
        return bgr, False
    scale = float(max_dim) / m
    size = (max(1, int(w * scale)), max(1, int(h * scale)))
    return cv2.resize(bgr, size, interpolation=cv2.INTER_AREA), True


# -----------------------------------------------------------------------------
# Optional perspective rectification
# -----------------------------------------------------------------------------

def _order_corners(pts: np.ndarray) -> np.ndarray:
    """tl, tr, br, bl"""
    rect = np.zeros((4, 2), dtype=np.float32)
    s = pts.sum(axis=1)
    d = np.diff(pts, axis=1)
    rect[0] = pts[np.argmin(s)]
    rect[1] = pts[np.argmin(d)]
    rect[2] = pts[np.argmax(s)]
    rect[3] = pts[np.argmax(d)]
    return rect


def _warp(image: np.ndarray, rect: np.ndarray) -> Optional[np.ndarray]:
    tl, tr, br, bl = rect
    out_w = int(max(np.linalg.norm(br - bl), np.linalg.norm(tr - tl)))
    out_h = int(max(np.linalg.norm(tr - br), np.linalg.norm(tl - bl)))
    if out_w <= 0 or out_h <= 0:
        return None

    dst = np.array(
        [[0, 0], [out_w - 1, 0], [out_w - 1, out_h - 1], [0, out_h - 1]],
        dtype=np.float32,
    )
    m = cv2.getPerspectiveTransform(rect, dst)
    return cv2.warpPerspective(
        image, m, (out_w, out_h),
        flags=cv2.INTER_CUBIC,
        borderMode=cv2.BORDER_REPLICATE,
    )


def _find_receipt_outline(bgr: np.ndarray) -> Optional[np.ndarray]:
    h, w = bgr.shape[:2]
    scale = 900.0 / max(h, w) if max(h, w) > 900 else 1.0
    small = bgr if scale == 1.0 else cv2.resize(
        bgr, (int(w * scale), int(h * scale)), interpolation=cv2.INTER_AREA
    )

    gray = cv2.GaussianBlur(cv2.cvtColor(small, cv2.COLOR_BGR2GRAY), (5, 5), 0)
    edges = cv2.Canny(gray, 40, 140)
    kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (5, 5))
    edges = cv2.morphologyEx(edges, cv2.MORPH_CLOSE, kernel, iterations=2)

    contours, _ = cv2.findContours(edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    min_area = _MIN_OUTLINE_AREA * small.shape[0] * small.shape[1]
    for c in sorted(contours, key=cv2.contourArea, reverse=True)[:6]:
        if cv2.contourArea(c) < min_area:
            break
        approx = cv2.approxPolyDP(c, 0.02 * cv2.arcLength(c, True), True)
        if len(approx) == 4:
            return approx.reshape(4, 2).astype(np.float32) / scale
    return None


def rectify(bgr: np.ndarray) -> Tuple[np.ndarray, bool]:
    """Warp the receipt outline flat; falls back to the input when unsure."""
    try:
        quad = _find_receipt_outline(bgr)
        if quad is None:
            return bgr, False
        warped = _warp(bgr, _order_corners(quad))
    except cv2.error as e:
        log.warning("Rectification failed, using original image: %s", e)
        return bgr, False

    if warped is None or min(warped.shape[:2]) < 400:
        return bgr, False
    return warped, True


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------

def prepare_image(
    content: bytes,
    filename: str,
    mime_type: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> PreparedImage:
    """
    Validate an uploaded receipt photo and shrink it for the vision model.
    Images already small enough are passed through byte-for-byte.
    """
    settings = settings or get_settings()

    if not content:
        raise ImageValidationError(f"{filename or 'file'} is empty")
    if len(content) > settings.max_image_bytes:
        mb = settings.max_image_bytes / (1024 * 1024)
        raise ImageValidationError(f"{filename or 'file'} is larger than {mb:.0f} MB")

    bgr = _decode(content)
    if bgr is None:
        raise ImageValidationError(f"{filename or 'file'} is not a readable image")

    h, w = bgr.shape[:2]
    rectified = False
    if settings.image_enable_rectify:
        bgr, rectified = rectify(bgr)

    bgr, resized = downscale(bgr, settings.image_max_dim)

    if not (resized or rectified):
        return PreparedImage(
            content=content,
            mime_type=mime_type or "image/jpeg",
            filename=filename,
            width=w,
            height=h,
        )

    out_h, out_w = bgr.shape[:2]
    log.info("Prepared %s: %dx%d -> %dx%d (rectified=%s)", filename, w, h, out_w, out_h, rectified)
    return PreparedImage(
        content=_encode_jpeg(bgr),
        mime_type="image/jpeg",
        filename=_jpeg_name(filename),
        width=out_w,
        height=out_h,
        resized=resized,
        rectified=rectified,
    )

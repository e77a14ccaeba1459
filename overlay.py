"""Thermal heatmap overlay composited onto camera frames."""
import json
import logging
import math
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Optional, Sequence

import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)

DEFAULT_ALPHA = 0.35
JPEG_QUALITY = 80
PNG_MAGIC = b"\x89\x50"


@dataclass(frozen=True)
class ThermalGrid:
    width: int
    height: int
    values: Sequence[Any]

    @classmethod
    def from_payload(cls, payload: Any) -> "ThermalGrid":
        """Build a grid from the device JSON ``{"w", "h", "data"}``.

        ``width``/``height``/``values`` are accepted as well. Missing or
        non-numeric dimensions become 0 so the compositor's guards apply.
        """
        if not isinstance(payload, dict):
            return cls(0, 0, [])
        width = _as_dimension(payload.get("w", payload.get("width")))
        height = _as_dimension(payload.get("h", payload.get("height")))
        values = payload.get("data", payload.get("values"))
        return cls(width, height, values if isinstance(values, list) else [])

    @classmethod
    def from_json(cls, text: str) -> "ThermalGrid":
        return cls.from_payload(json.loads(text))


@dataclass(frozen=True)
class CompositeFrame:
    data: bytes
    mime_type: str


def _as_dimension(value: Any) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return int(number)


def _as_float(value: Any) -> float:
    if isinstance(value, bool):
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def detect_mime_type(data: bytes) -> str:
    return "image/png" if data[:2] == PNG_MAGIC else "image/jpeg"


def encode_frame(image: Image.Image) -> CompositeFrame:
    """JPEG at quality 80, PNG if the JPEG encoder fails."""
    buf = BytesIO()
    try:
        image.save(buf, "JPEG", quality=JPEG_QUALITY)
    except (OSError, ValueError) as e:
        logger.warning(f"JPEG encode failed, falling back to PNG: {e}")
        buf = BytesIO()
        image.save(buf, "PNG")
    data = buf.getvalue()
    return CompositeFrame(data=data, mime_type=detect_mime_type(data))


def heat_colors(t: np.ndarray) -> np.ndarray:
    """Map normalized values in [0, 1] to an (..., 3) uint8 RGB array."""
    r = 255 * np.clip(1.7 * t, 0, 1)
    g = 255 * np.clip(t * t, 0, 1)
    b = 255 * np.clip((1 - t) * (1 - t), 0, 1)
    rgb = np.stack([r, g, b], axis=-1)
    # round half up
    return np.clip(np.floor(rgb + 0.5), 0, 255).astype(np.uint8)


def _nearest_resize(heat: Image.Image, width: int, height: int) -> Image.Image:
    src = np.asarray(heat)
    src_h, src_w = src.shape[:2]
    sx = width / src_w
    sy = height / src_h
    ys = np.clip(np.floor(np.arange(height) / sy).astype(int), 0, src_h - 1)
    xs = np.clip(np.floor(np.arange(width) / sx).astype(int), 0, src_w - 1)
    return Image.fromarray(src[ys[:, None], xs[None, :]], "RGB")


def render_heatmap(grid: ThermalGrid) -> Optional[Image.Image]:
    """Rasterize ``grid`` to a width x height RGB image.

    Returns None when the grid is too small, too short, or flat.
    """
    w, h = grid.width, grid.height
    if w < 2 or h < 2:
        return None
    n = w * h
    if len(grid.values) < n:
        return None

    values = np.array([_as_float(v) for v in grid.values[:n]], dtype=np.float64)
    finite = np.isfinite(values)
    if not finite.any():
        return None
    t_min = float(values[finite].min())
    t_max = float(values[finite].max())
    if t_max - t_min <= 1e-6:
        return None

    values = np.where(finite, values, t_min)
    t = np.clip((values - t_min) / (t_max - t_min + 1e-6), 0, 1)
    return Image.fromarray(heat_colors(t.reshape(h, w)), "RGB")


def compose(camera_bytes: bytes, grid: ThermalGrid, alpha: float = DEFAULT_ALPHA) -> CompositeFrame:
    """Blend a heatmap of ``grid`` over the camera frame.

    The frame is returned re-encoded but otherwise unchanged when the grid is
    unusable. Decode and encode errors propagate to the caller.
    """
    base = Image.open(BytesIO(camera_bytes))
    base.load()
    base = base.convert("RGB")

    heat = render_heatmap(grid)
    if heat is None:
        return encode_frame(base)

    try:
        scaled = heat.resize(base.size, Image.BILINEAR)
    except (ValueError, MemoryError) as e:
        logger.warning(f"Bilinear resize of {heat.size} grid failed, using nearest: {e}")
        scaled = _nearest_resize(heat, base.width, base.height)

    try:
        alpha = float(alpha)
    except (TypeError, ValueError):
        alpha = DEFAULT_ALPHA
    if not math.isfinite(alpha):
        alpha = DEFAULT_ALPHA
    alpha = min(1.0, max(0.0, alpha))

    return encode_frame(Image.blend(base, scaled, alpha))

"""Outer projection compositing.

A frame of the product video sits in an ``inner`` square in the middle of a
larger ``outer`` canvas. The area around it is filled by extending the
video's edge pixels outward, blurred, and the sharp inner frame is laid back
on top. Everything here works on numpy arrays; the ``*_file`` wrappers read
and write PNG frames with Pillow so the pipeline can run each stage over a
directory of frames.
"""
import logging
from dataclasses import dataclass
from functools import lru_cache

import numpy as np
from PIL import Image, ImageFilter, ImageOps

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CanvasGeometry:
    inner: int = 1080
    outer: int = 3240

    def __post_init__(self):
        if self.inner <= 0 or self.outer < self.inner:
            raise ValueError(f"Invalid canvas geometry inner={self.inner} outer={self.outer}")

    @property
    def inset(self) -> int:
        return (self.outer - self.inner) // 2

    @classmethod
    def from_settings(cls, settings):
        return cls(inner=settings.inner_size, outer=settings.outer_size)


@dataclass(frozen=True)
class InnerFadeOptions:
    feather_px: int = 5
    white_threshold: int = 150
    white_average_threshold: int = 170
    fade_start_ratio: float = 0.8

    @classmethod
    def from_settings(cls, settings):
        return cls(
            feather_px=settings.feather_px,
            white_threshold=settings.white_threshold,
            white_average_threshold=settings.white_average_threshold,
            fade_start_ratio=settings.white_fade_start_ratio,
        )


def _readonly(*arrays):
    for array in arrays:
        array.setflags(write=False)
    return arrays


@lru_cache(maxsize=8)
def nearest_edge_map(geometry: CanvasGeometry):
    """Nearest inner-frame pixel for every canvas pixel.

    Returns ``(edge_x, edge_y, distance)``: ``edge_x`` has one entry per canvas
    column, ``edge_y`` one per canvas row, both in inner-frame coordinates, and
    ``distance`` is the (outer, outer) euclidean distance to that edge pixel.
    Pixels left or right of the inner box map to the vertical edges at their
    clamped row; pixels above or below map to the horizontal edges, so corner
    regions land on the inner frame's corner pixels.
    """
    inset = geometry.inset
    coords = np.arange(geometry.outer)
    clamped = np.clip(coords, inset, inset + geometry.inner - 1)

    edge = (clamped - inset).astype(np.intp)
    offset = (coords - clamped).astype(np.float32)
    distance = np.hypot(offset[:, None], offset[None, :]).astype(np.float32)
    return _readonly(edge, edge.copy(), distance)


@lru_cache(maxsize=8)
def edge_fade_factors(geometry: CanvasGeometry) -> np.ndarray:
    """Alpha multiplier ``max(0.3, 1 - min(d / (outer / 2), 0.7))`` per canvas pixel"""
    _, _, distance = nearest_edge_map(geometry)
    max_fade_distance = geometry.outer * 0.5
    fade = np.maximum(0.3, 1.0 - np.minimum(distance / max_fade_distance, 0.7)).astype(np.float32)
    fade.setflags(write=False)
    return fade


def _as_rgba(frame: np.ndarray) -> np.ndarray:
    frame = np.asarray(frame)
    if frame.ndim == 2:
        frame = np.stack([frame] * 3, axis=-1)
    if frame.shape[2] == 4:
        return frame.astype(np.uint8, copy=False)
    alpha = np.full(frame.shape[:2] + (1,), 255, dtype=np.uint8)
    return np.concatenate([frame[:, :, :3].astype(np.uint8, copy=False), alpha], axis=-1)


def project_outer(frame: np.ndarray, geometry: CanvasGeometry, fade: bool = False) -> np.ndarray:
    """Fill an outer canvas by extending the frame's edge pixels outward.

    ``frame`` is a square RGB(A) frame at inner size or larger; sample points
    are scaled into it. The inner box itself is left transparent.
    """
    source = _as_rgba(frame)
    height, width = source.shape[:2]
    edge_x, edge_y, _ = nearest_edge_map(geometry)

    sample_x = np.minimum((edge_x * (width / geometry.inner)).astype(np.intp), width - 1)
    sample_y = np.minimum((edge_y * (height / geometry.inner)).astype(np.intp), height - 1)
    canvas = source[np.ix_(sample_y, sample_x)]

    if fade:
        alpha = canvas[:, :, 3].astype(np.float32) * edge_fade_factors(geometry)
        canvas[:, :, 3] = np.floor(alpha).astype(np.uint8)

    inset, end = geometry.inset, geometry.inset + geometry.inner
    canvas[inset:end, inset:end] = 0
    return canvas


def smoothstep(t):
    t = np.clip(t, 0.0, 1.0)
    return t * t * (3.0 - 2.0 * t)


def white_mask(rgb: np.ndarray, threshold: int = 150, average_threshold: int = 170) -> np.ndarray:
    """Near-white pixels: every channel above ``threshold`` or mean above ``average_threshold``"""
    rgb = rgb[:, :, :3].astype(np.int16)
    return np.all(rgb > threshold, axis=-1) | (rgb.mean(axis=-1) > average_threshold)


@lru_cache(maxsize=4)
def _white_fade_curve(inner: int, start_ratio: float) -> np.ndarray:
    center = inner / 2.0
    max_radius = inner / 2.0
    fade_start = max_radius * start_ratio
    fade_end = max(max_radius, max_radius * np.sqrt(2.0) * 1.05)

    coords = np.arange(inner, dtype=np.float32) - center
    distance = np.hypot(coords[:, None], coords[None, :])
    factor = 1.0 - smoothstep((distance - fade_start) / (fade_end - fade_start))
    factor = np.where(distance >= fade_start, factor, 1.0)
    factor = np.where(distance <= fade_end, factor, 0.0).astype(np.float32)
    factor.setflags(write=False)
    return factor


def fit_inner(frame: np.ndarray, inner: int) -> np.ndarray:
    """Resize to fit an inner x inner box, padding with transparency"""
    image = Image.fromarray(_as_rgba(frame))
    fitted = ImageOps.contain(image, (inner, inner), Image.LANCZOS).filter(ImageFilter.SHARPEN)
    canvas = Image.new("RGBA", (inner, inner), (0, 0, 0, 0))
    canvas.paste(fitted, ((inner - fitted.width) // 2, (inner - fitted.height) // 2))
    return np.array(canvas)


def prepare_inner(frame: np.ndarray, inner: int, options: InnerFadeOptions = InnerFadeOptions()) -> np.ndarray:
    """Inner frame with near-white corners faded out and a transparent feather.

    Near-white pixels fade with a smoothstep from ``fade_start_ratio`` of the
    inner radius out past the corners. The outer ``feather_px`` pixels become
    fully transparent; other visible non-white pixels are forced opaque.
    """
    rgba = fit_inner(frame, inner)
    alpha = rgba[:, :, 3].astype(np.float32)

    white = white_mask(rgba, options.white_threshold, options.white_average_threshold)
    fading = white & (alpha > 0)
    curve = _white_fade_curve(inner, options.fade_start_ratio)
    alpha = np.where(fading, np.floor(alpha * curve), alpha)

    feather = int(options.feather_px)
    if feather > 0:
        alpha[:feather, :] = 0
        alpha[-feather:, :] = 0
        alpha[:, :feather] = 0
        alpha[:, -feather:] = 0

    alpha = np.where(~white & (alpha > 0), 255, alpha)
    rgba[:, :, 3] = alpha.astype(np.uint8)
    rgba[rgba[:, :, 3] == 0, :3] = 0
    return rgba


def blur_canvas(canvas: np.ndarray, radius: float) -> np.ndarray:
    image = Image.fromarray(_as_rgba(canvas))
    return np.array(image.filter(ImageFilter.GaussianBlur(radius)))


def composite_frame(blurred: np.ndarray, inner: np.ndarray, geometry: CanvasGeometry) -> np.ndarray:
    """Lay the sharp inner frame over the blurred canvas and flatten onto black"""
    overlay = Image.new("RGBA", (geometry.outer, geometry.outer), (0, 0, 0, 0))
    overlay.paste(Image.fromarray(_as_rgba(inner)), (geometry.inset, geometry.inset))

    layered = Image.alpha_composite(Image.fromarray(_as_rgba(blurred)), overlay)
    background = Image.new("RGBA", layered.size, (0, 0, 0, 255))
    return np.array(Image.alpha_composite(background, layered).convert("RGB"))


# File-level wrappers used by the pipeline stages

def load_frame(path: str) -> np.ndarray:
    with Image.open(path) as image:
        return np.array(image.convert("RGBA"))


def save_frame(array: np.ndarray, path: str) -> str:
    Image.fromarray(np.ascontiguousarray(array, dtype=np.uint8)).save(path, format="PNG", compress_level=1)
    return path


def prepare_inner_file(source_path: str, dest_path: str, inner: int, options: InnerFadeOptions) -> str:
    return save_frame(prepare_inner(load_frame(source_path), inner, options), dest_path)


def project_outer_file(source_path: str, dest_path: str, geometry: CanvasGeometry, fade: bool = False) -> str:
    return save_frame(project_outer(load_frame(source_path), geometry, fade), dest_path)


def blur_file(source_path: str, dest_path: str, radius: float) -> str:
    return save_frame(blur_canvas(load_frame(source_path), radius), dest_path)


def composite_file(blurred_path: str, inner_path: str, dest_path: str, geometry: CanvasGeometry) -> str:
    return save_frame(composite_frame(load_frame(blurred_path), load_frame(inner_path), geometry), dest_path)

import cv2
import numpy as np

from backends import BackendError, FinalEncoder, RasterTransform, ToneRecipe, get_recipe
from metadata import Raster


def load_array(raster: Raster) -> np.ndarray:
    if raster.data is not None:
        return raster.data
    if raster.path is None:
        raise BackendError("raster was already released")
    try:
        img = cv2.imread(str(raster.path), cv2.IMREAD_UNCHANGED)
    except cv2.error as e:
        raise BackendError(f"cannot decode {raster.path.name}: {e}") from e
    if img is None:
        raise BackendError(f"cannot decode {raster.path.name}")
    return img


def to_gray(img: np.ndarray) -> np.ndarray:
    if img.ndim == 2:
        return img
    if img.shape[2] == 4:
        return cv2.cvtColor(img, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)


def shrink_to(img: np.ndarray, longest_edge: int) -> np.ndarray:
    h, w = img.shape[:2]
    scale = longest_edge / max(h, w)
    if scale >= 1:
        return img
    size = (max(1, round(w * scale)), max(1, round(h * scale)))
    return cv2.resize(img, size, interpolation=cv2.INTER_AREA)


def sigmoidal_lut(contrast: float, midpoint_pct: float) -> np.ndarray:
    # Same curve as ImageMagick -sigmoidal-contrast, normalised to keep 0 and 255 fixed
    x = np.linspace(0.0, 1.0, 256)
    m = midpoint_pct / 100.0
    lo = 1.0 / (1.0 + np.exp(contrast * m))
    hi = 1.0 / (1.0 + np.exp(contrast * (m - 1.0)))
    y = (1.0 / (1.0 + np.exp(contrast * (m - x))) - lo) / (hi - lo)
    return np.clip(y * 255.0 + 0.5, 0, 255).astype(np.uint8)


def contrast_stretch(img: np.ndarray, pct: float) -> np.ndarray:
    lo, hi = np.percentile(img, [pct, 100.0 - pct])
    if hi <= lo:
        return img
    out = (img.astype(np.float32) - lo) * (255.0 / (hi - lo))
    return np.clip(out, 0, 255).astype(np.uint8)


def unsharp_mask(img: np.ndarray, sigma: float, amount: float, threshold: float) -> np.ndarray:
    src = img.astype(np.float32)
    blurred = cv2.GaussianBlur(src, (0, 0), sigma)
    diff = src - blurred
    mask = np.abs(diff) > threshold * 255.0
    out = np.where(mask, src + amount * diff, src)
    return np.clip(out, 0, 255).astype(np.uint8)


def apply_tone(img: np.ndarray, tone: ToneRecipe) -> np.ndarray:
    if tone.grayscale:
        img = to_gray(img)
    if tone.auto_level:
        img = cv2.normalize(img, None, 0, 255, cv2.NORM_MINMAX)
    if tone.sigmoidal_contrast:
        img = cv2.LUT(img, sigmoidal_lut(*tone.sigmoidal_contrast))
    if tone.stretch_pct > 0:
        img = contrast_stretch(img, tone.stretch_pct)
    if tone.unsharp:
        _, sigma, amount, threshold = tone.unsharp
        if sigma > 0 and amount > 0:
            img = unsharp_mask(img, sigma, amount, threshold)
    return img


class OpenCvTransform(RasterTransform):
    """In-process equivalent of the ImageMagick resize + tone pipeline."""

    def transform(self, source: Raster, longest_edge: int, recipe: str) -> Raster:
        tone = get_recipe(recipe)
        img = load_array(source)
        try:
            img = apply_tone(shrink_to(img, longest_edge), tone)
        except cv2.error as e:
            raise BackendError(f"opencv transform failed at {longest_edge}px: {e}") from e
        return Raster(data=img, longest_edge=longest_edge)


class OpenCvEncoder(FinalEncoder):
    def __init__(self, fmt: str = "webp") -> None:
        if fmt not in ("webp", "jpg"):
            raise ValueError(f"unsupported format {fmt!r}")
        self.extension = fmt

    def encode(self, raster: Raster, quality: int, size_hint: int | None = None) -> bytes:
        # imencode has no target-size mode, size_hint is ignored
        img = load_array(raster)
        if self.extension == "webp":
            params = [cv2.IMWRITE_WEBP_QUALITY, quality]
        else:
            params = [cv2.IMWRITE_JPEG_QUALITY, quality]
        try:
            ok, encoded = cv2.imencode("." + self.extension, img, params)
        except cv2.error as e:
            raise BackendError(f"cv2.imencode failed for .{self.extension} q{quality}: {e}") from e
        if not ok:
            raise BackendError(f"cv2.imencode failed for .{self.extension} q{quality}")
        return encoded.tobytes()

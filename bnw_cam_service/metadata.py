
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
import numpy as np

# CaptureFailed reasons
REASON_BACKEND = "backend-error"
REASON_ENCODE = "encode-error"
REASON_TIMEOUT = "timeout"
REASON_UNAVAILABLE = "unavailable"
REASON_WRITE = "write-error"


class PressOutcome(Enum):
    ACCEPTED = "accepted"
    REJECTED_BUSY = "busy"
    REJECTED_CLOSED = "closed"


@dataclass(kw_only=True, frozen=True)
class CaptureRequest:
    timeout_ms: int
    longest_edge: int
    recipe: str
    width: int = 0
    height: int = 0
    output_format: str = "jpg"


@dataclass(kw_only=True)
class Raster:
    """
    Decoded pixels held either in memory (data) or in a temp file (path).
    Whoever produced it owns it and must call release() once it is superseded.
    """
    path: Path | None = None
    data: np.ndarray | None = None
    longest_edge: int | None = None
    temporary: bool = True

    def release(self) -> None:
        if self.path is not None and self.temporary:
            self.path.unlink(missing_ok=True)
        self.path = None
        self.data = None


@dataclass(kw_only=True, frozen=True)
class Ladder:
    resolutions: tuple[int, ...]
    qualities: tuple[int, ...]

    def __post_init__(self) -> None:
        if not self.resolutions or not self.qualities:
            raise ValueError("ladder needs at least one resolution and one quality")
        if any(r <= 0 for r in self.resolutions):
            raise ValueError(f"resolutions must be positive: {self.resolutions}")
        if any(not 1 <= q <= 100 for q in self.qualities):
            raise ValueError(f"qualities must be within 1..100: {self.qualities}")
        for name, values in (("resolutions", self.resolutions), ("qualities", self.qualities)):
            if any(a <= b for a, b in zip(values, values[1:])):
                raise ValueError(f"{name} must be strictly decreasing: {values}")

    def capped(self, longest_edge: int) -> "Ladder":
        """Drop resolution tiers above longest_edge."""
        kept = tuple(r for r in self.resolutions if r <= longest_edge)
        return Ladder(resolutions=kept or (longest_edge,), qualities=self.qualities)


@dataclass(kw_only=True, frozen=True)
class EncodingCandidate:
    resolution: int
    quality: int
    size: int
    data: bytes = field(repr=False)


@dataclass(kw_only=True, frozen=True)
class EncodeResult:
    candidate: EncodingCandidate
    within_budget: bool
    budget: int
    tried: int


@dataclass(kw_only=True, frozen=True)
class Artifact:
    name: str
    path: Path
    size: int
    resolution: int
    quality: int
    within_budget: bool
    budget: int
    candidates_tried: int


@dataclass(kw_only=True, frozen=True)
class CaptureFailed:
    reason: str
    detail: str = ""


@dataclass(kw_only=True, frozen=True)
class ArtifactEntry:
    name: str
    mtime: float
    size: int

import threading

import numpy as np

from backends import BackendError, CaptureBackend, FinalEncoder, RasterTransform
from metadata import CaptureRequest, Raster


def make_request(longest_edge: int = 960) -> CaptureRequest:
    return CaptureRequest(timeout_ms=1, longest_edge=longest_edge, recipe="filmish")


class FakeCamera(CaptureBackend):
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls = 0
        self.produced: list[Raster] = []

    def capture(self, request: CaptureRequest) -> Raster:
        self.calls += 1
        if self.error is not None:
            raise self.error
        raster = Raster(data=np.full((48, 64, 3), 128, dtype=np.uint8))
        self.produced.append(raster)
        return raster


class TierTransform(RasterTransform):
    """Hands out a distinct working raster per resolution and remembers them."""

    def __init__(self) -> None:
        self.produced: list[Raster] = []

    def transform(self, source: Raster, longest_edge: int, recipe: str) -> Raster:
        raster = Raster(data=np.zeros((2, 2), dtype=np.uint8), longest_edge=longest_edge)
        self.produced.append(raster)
        return raster


class SizeTableEncoder(FinalEncoder):
    """Encoded size is size_of(resolution, quality); fail_at makes that pair raise."""

    def __init__(self, size_of, fail_at: tuple[int, int] | None = None) -> None:
        self.size_of = size_of
        self.fail_at = fail_at
        self.calls: list[tuple[int, int, int | None]] = []

    def encode(self, raster: Raster, quality: int, size_hint: int | None = None) -> bytes:
        key = (raster.longest_edge, quality)
        self.calls.append((raster.longest_edge, quality, size_hint))
        if key == self.fail_at:
            raise BackendError("encoder crashed", stderr="convert: no decode delegate")
        return b"\0" * self.size_of(*key)


class BlockingCycle:
    """run_cycle stand-in that parks until released."""

    def __init__(self, result=None, error: Exception | None = None) -> None:
        self.started = threading.Event()
        self.release = threading.Event()
        self.result = result
        self.error = error
        self.calls = 0

    def __call__(self, request):
        self.calls += 1
        self.started.set()
        self.release.wait(5)
        if self.error is not None:
            raise self.error
        return self.result

import logging
from dataclasses import dataclass
from typing import Callable

from backends import FinalEncoder, RasterTransform
from metadata import EncodeResult, EncodingCandidate, Ladder, Raster


@dataclass(kw_only=True, frozen=True)
class SearchState:
    """
    Accumulator threaded through the ladder scan.

    best:   smallest candidate seen so far, ties keep the earlier one
    chosen: the candidate just folded in, if it met the budget
    """
    best: EncodingCandidate | None = None
    chosen: EncodingCandidate | None = None
    tried: int = 0


def fold_candidate(state: SearchState, candidate: EncodingCandidate, budget: int) -> SearchState:
    best = state.best
    if best is None or candidate.size < best.size:
        best = candidate
    return SearchState(
        best=best,
        chosen=candidate if candidate.size <= budget else None,
        tried=state.tried + 1,
    )


def search_ladder(
    ladder: Ladder,
    budget: int,
    prepare: Callable[[int], Raster],
    encode: Callable[[Raster, int], bytes],
) -> EncodeResult:
    """
    Walk resolutions (largest first) and, per resolution, qualities (highest first).
    The first candidate within budget wins. If none fits, the smallest one seen is returned.

    prepare(resolution) builds the working raster for one tier; it is released when the
    tier is done or the scan stops. encode(raster, quality) returns the encoded bytes.
    """
    state = SearchState()
    for resolution in ladder.resolutions:
        working = prepare(resolution)
        try:
            for quality in ladder.qualities:
                data = encode(working, quality)
                candidate = EncodingCandidate(resolution=resolution, quality=quality, size=len(data), data=data)
                logging.info("  -> %dpx q%d  %.1f KB", resolution, quality, candidate.size / 1024)
                state = fold_candidate(state, candidate, budget)
                if state.chosen is not None:
                    return EncodeResult(candidate=state.chosen, within_budget=True, budget=budget, tried=state.tried)
        finally:
            working.release()

    logging.warning(
        "No candidate within %d bytes after %d tries, keeping smallest: %dpx q%d %d bytes",
        budget, state.tried, state.best.resolution, state.best.quality, state.best.size
    )
    return EncodeResult(candidate=state.best, within_budget=False, budget=budget, tried=state.tried)


class AdaptiveEncoder:
    def __init__(self, transform: RasterTransform, encoder: FinalEncoder, size_hint: bool = False) -> None:
        self.transform = transform
        self.encoder = encoder
        self.size_hint = size_hint

    @property
    def extension(self) -> str:
        return self.encoder.extension

    def encode(self, raster: Raster, budget: int, ladder: Ladder, recipe: str) -> EncodeResult:
        if budget <= 0:
            raise ValueError(f"budget must be positive, got {budget}")
        hint = budget if self.size_hint else None
        return search_ladder(
            ladder,
            budget,
            prepare=lambda resolution: self.transform.transform(raster, resolution, recipe),
            encode=lambda working, quality: self.encoder.encode(working, quality, hint),
        )

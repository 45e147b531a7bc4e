import logging
import time

from artifact_store import ArtifactDirectory
from backends import BackendError, BackendTimeout, BackendUnavailable, CaptureBackend
from byte_budget import AdaptiveEncoder
from metadata import (
    REASON_BACKEND,
    REASON_ENCODE,
    REASON_TIMEOUT,
    REASON_UNAVAILABLE,
    REASON_WRITE,
    Artifact,
    CaptureFailed,
    CaptureRequest,
    Ladder,
)


def _failure(stage: str, default_reason: str, e: Exception) -> CaptureFailed:
    if isinstance(e, BackendTimeout):
        reason = REASON_TIMEOUT
    elif isinstance(e, BackendUnavailable):
        reason = REASON_UNAVAILABLE
    else:
        reason = default_reason
    stderr = getattr(e, "stderr", "")
    logging.error("Capture failed at %s (%s): %s", stage, reason, e)
    if stderr:
        logging.error("  backend output: %s", stderr)
    return CaptureFailed(reason=reason, detail=stderr or str(e))


class CaptureOrchestrator:
    """capture -> adaptive encode -> artifact write, one request at a time."""

    def __init__(
        self,
        camera: CaptureBackend,
        encoder: AdaptiveEncoder,
        store: ArtifactDirectory,
        ladder: Ladder,
        budget: int,
    ) -> None:
        self.camera = camera
        self.encoder = encoder
        self.store = store
        self.ladder = ladder
        self.budget = budget

    def run_cycle(self, request: CaptureRequest) -> Artifact | CaptureFailed:
        t0 = time.time()
        # settings may be swapped by a runtime `set`; a cycle uses one consistent snapshot
        camera, encoder, ladder, budget = self.camera, self.encoder, self.ladder, self.budget

        try:
            source = camera.capture(request)
        except (BackendError, BackendUnavailable) as e:
            return _failure("capture", REASON_BACKEND, e)

        try:
            result = encoder.encode(source, budget, ladder.capped(request.longest_edge), request.recipe)
        except (BackendError, BackendUnavailable) as e:
            return _failure("encode", REASON_ENCODE, e)
        finally:
            source.release()

        chosen = result.candidate
        try:
            path = self.store.write(chosen.data, encoder.extension)
        except OSError as e:
            return _failure("write", REASON_WRITE, e)

        artifact = Artifact(
            name=path.name,
            path=path,
            size=chosen.size,
            resolution=chosen.resolution,
            quality=chosen.quality,
            within_budget=result.within_budget,
            budget=result.budget,
            candidates_tried=result.tried,
        )
        logging.info(
            "Saved: %s  %.1f KB (%dpx q%d, %s, %d tried, %.1fs)",
            artifact.name,
            artifact.size / 1024,
            artifact.resolution,
            artifact.quality,
            "within budget" if artifact.within_budget else "best effort over budget",
            artifact.candidates_tried,
            time.time() - t0,
        )
        return artifact

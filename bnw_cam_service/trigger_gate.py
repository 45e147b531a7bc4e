import logging
import queue
import threading
from typing import Callable

from metadata import Artifact, CaptureFailed, CaptureRequest, PressOutcome

_STOP = object()


class TriggerGate(threading.Thread):
    """
    Single-flight admission for capture cycles.

    A press takes the only permit or is rejected on the spot, nothing is queued.
    Admitted requests go through a one-slot mailbox to this worker thread, which
    runs the cycle and gives the permit back however the cycle ends.
    """

    def __init__(
        self,
        run_cycle: Callable[[CaptureRequest], Artifact | CaptureFailed],
        make_request: Callable[[], CaptureRequest],
    ) -> None:
        super().__init__(daemon=True, name="capture-worker")
        self.run_cycle = run_cycle
        self.make_request = make_request
        self._permit = threading.BoundedSemaphore(1)
        self._mailbox: queue.Queue = queue.Queue(maxsize=1)
        self._idle = threading.Event()
        self._idle.set()
        self._admission = threading.Lock()
        self._closed = False
        self.accepted = 0
        self.rejected = 0
        self.completed = 0
        self.last_result: Artifact | CaptureFailed | None = None

    @property
    def busy(self) -> bool:
        return not self._idle.is_set()

    def on_press(self) -> PressOutcome:
        # admission and stop() are serialized, so a press is either queued ahead of _STOP or refused
        with self._admission:
            if self._closed:
                logging.info("Shutting down, ignoring press")
                return PressOutcome.REJECTED_CLOSED
            if not self._permit.acquire(blocking=False):
                self.rejected += 1
                logging.info("Busy, ignoring press")
                return PressOutcome.REJECTED_BUSY

            self._idle.clear()
            try:
                request = self.make_request()
                self._mailbox.put_nowait(request)
            except Exception:
                self._release()
                raise
            self.accepted += 1
        logging.info("Button PRESSED -> capturing...")
        return PressOutcome.ACCEPTED

    def _release(self) -> None:
        self._idle.set()
        self._permit.release()

    def run(self) -> None:
        while True:
            request = self._mailbox.get()
            if request is _STOP:
                return
            try:
                self.last_result = self.run_cycle(request)
            except Exception as e:
                logging.exception("Capture cycle crashed: %s", e)
                self.last_result = CaptureFailed(reason="fault", detail=str(e))
            finally:
                self.completed += 1
                self._release()

    def wait_idle(self, timeout: float | None = None) -> bool:
        return self._idle.wait(timeout)

    def stop(self, timeout: float | None = None) -> None:
        """Refuse new presses, let an in-flight cycle finish, then end the worker."""
        with self._admission:
            self._closed = True
        if self.is_alive():
            self._mailbox.put(_STOP)
            self.join(timeout)

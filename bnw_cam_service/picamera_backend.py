import logging
import time

from picamera2 import Picamera2

from backends import BackendError, CaptureBackend
from metadata import CaptureRequest, Raster


class Picamera2Capture(CaptureBackend):
    """In-process capture for setups without rpicam-still. Only imported when selected."""

    def __init__(self) -> None:
        self.cam = Picamera2()
        self.size = None
        self.configured = False

    def _configure(self, request: CaptureRequest) -> None:
        size = (request.width, request.height) if request.width and request.height else None
        if self.configured and size == self.size:
            return
        main = {"format": "RGB888"}
        if size:
            main["size"] = size
        self.cam.configure(self.cam.create_still_configuration(main=main))
        self.size = size
        self.configured = True

    def capture(self, request: CaptureRequest) -> Raster:
        try:
            self._configure(request)
            self.cam.start()
            try:
                # let AE/AWB settle, same role as rpicam-still -t
                time.sleep(request.timeout_ms / 1000)
                img = self.cam.capture_array()
            finally:
                self.cam.stop()
        except (RuntimeError, OSError) as e:
            logging.error("picamera2 capture failed: %s", e)
            raise BackendError(f"picamera2 capture failed: {e}", stderr=str(e)) from e
        return Raster(data=img)

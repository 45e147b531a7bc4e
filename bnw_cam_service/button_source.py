import logging
import time
from typing import Callable

from gpiozero import Button
from gpiozero.exc import GPIOZeroError

from backends import HardwareSignalError


class EdgeFilter:
    """
    Debounce plus asserted-edge detection for a raw button level.

    Any edge arriving within debounce_s of the previous raw edge is bounce and is
    dropped, so a burst of toggles yields at most the press that opened it.
    Released edges only move the clock; asserted edges are the actionable ones.
    """

    def __init__(self, debounce_s: float, clock: Callable[[], float] = time.monotonic) -> None:
        if debounce_s < 0:
            raise ValueError("debounce must not be negative")
        self.debounce_s = debounce_s
        self.clock = clock
        self.last_edge: float | None = None
        self.asserted = False

    def feed(self, asserted: bool, at: float | None = None) -> bool:
        now = self.clock() if at is None else at
        bounced = self.last_edge is not None and now - self.last_edge < self.debounce_s
        self.last_edge = now
        if bounced:
            return False
        self.asserted = asserted
        return asserted


class ButtonSource:
    def __init__(self, cfg: dict, on_press: Callable[[], object]) -> None:
        self.cfg = cfg
        self.on_press = on_press
        self.filter = EdgeFilter(cfg.get("debounce_us", 10) / 1_000_000)
        try:
            # active-low wiring: internal pull-up, press pulls the pin to ground
            self.button = Button(cfg["gpio"], pull_up=cfg.get("active_low", True), bounce_time=None)
        except GPIOZeroError as e:
            raise HardwareSignalError(f"cannot open button on GPIO {cfg['gpio']}: {e}") from e
        self.button.when_pressed = self._pressed
        self.button.when_released = self._released
        logging.info("Ready. Press button on GPIO %d to capture.", cfg["gpio"])

    def _edge(self, asserted: bool) -> None:
        try:
            if self.filter.feed(asserted):
                self.on_press()
        except Exception as e:
            logging.error("Button press failed: %s", e)

    def _pressed(self) -> None:
        self._edge(True)

    def _released(self) -> None:
        self._edge(False)

    def close(self) -> None:
        """Stop listening for edges. Safe to call more than once."""
        button = getattr(self, "button", None)
        if button is None:
            return
        button.when_pressed = None
        button.when_released = None
        try:
            button.close()
        except GPIOZeroError as e:
            logging.warning("Failed to close button cleanly: %s", e)
        self.button = None

import copy
import json
import logging
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path

import psutil

from artifact_store import ArtifactDirectory
from backends import (
    BackendUnavailable,
    CameraServiceError,
    ConfigError,
    CwebpEncoder,
    HardwareSignalError,
    ImageMagickEncoder,
    ImageMagickTransform,
    RpicamStill,
    find_capture_binary,
    probe_binaries,
)
from byte_budget import AdaptiveEncoder
from metadata import Artifact, PressOutcome
from opencv_backends import OpenCvEncoder, OpenCvTransform
from orchestrator import CaptureOrchestrator
from service_config import build_ladder, build_request, get_param, load_config, update_cfg, validate_config
from trigger_gate import TriggerGate

process = psutil.Process()


def setup_logging(cfg: dict) -> None:
    log_level = getattr(logging, cfg["logging"]["level"].upper(), logging.INFO)

    log_dir = Path("logs")
    log_dir.mkdir(exist_ok=True)

    log_file = log_dir / "bnw_cam_service.log"

    logger = logging.getLogger()
    logger.setLevel(log_level)

    # Avoid duplicate handlers if restarted
    if logger.handlers:
        return

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    console = logging.StreamHandler()
    console.setLevel(log_level)
    console.setFormatter(formatter)

    file = RotatingFileHandler(
        log_file,
        maxBytes=5 * 1024 * 1024,  # 5 MiB
        backupCount=3
    )
    file.setLevel(log_level)
    file.setFormatter(formatter)

    logger.addHandler(console)
    logger.addHandler(file)


def log_memory(prefix=""):
    rss = process.memory_info().rss / (1024 * 1024)
    swap = psutil.swap_memory().percent
    logging.info("%sRSS=%.1f MiB | SWAP=%.1f%%", prefix, rss, swap)
    return rss, swap


def describe_mode(cfg: dict) -> str:
    enc = cfg["encode"]
    return (
        f"{cfg['transform']['recipe']} • {enc['format']} ≤{enc['budget_bytes'] / 1000:g} KB "
        f"({cfg['capture']['backend']}/{cfg['transform']['backend']}/{enc['backend']})"
    )


# read once at startup; a runtime `set` on these is refused
RESTART_KEYS = ("button.", "network.", "export.", "logging.", "capture.backend", "capture.binary", "capture.process_timeout_s")

# a runtime `set` on these rebuilds the transform and encoder
ENCODER_KEYS = ("transform.backend", "transform.process_timeout_s", "encode.backend", "encode.format",
                "encode.size_hint", "encode.process_timeout_s")


def build_capture(cfg: dict):
    cap = cfg["capture"]
    if cap["backend"] == "picamera2":
        from picamera_backend import Picamera2Capture
        camera = Picamera2Capture()
    else:
        camera = RpicamStill(find_capture_binary(cap.get("binary")), cap["process_timeout_s"])
    probe_binaries(camera.required_binaries())
    return camera


def build_encoder(cfg: dict) -> AdaptiveEncoder:
    tr, enc = cfg["transform"], cfg["encode"]

    if tr["backend"] == "opencv":
        transform = OpenCvTransform()
    else:
        transform = ImageMagickTransform(process_timeout_s=tr["process_timeout_s"])

    match enc["backend"]:
        case "opencv":
            encoder = OpenCvEncoder(enc["format"])
        case "cwebp":
            encoder = CwebpEncoder(process_timeout_s=enc["process_timeout_s"])
        case _:
            encoder = ImageMagickEncoder(enc["format"], process_timeout_s=enc["process_timeout_s"])

    probe_binaries(transform.required_binaries() + encoder.required_binaries())
    return AdaptiveEncoder(transform, encoder, size_hint=enc["size_hint"])


def format_result(result) -> str:
    if result is None:
        return "NONE"
    if isinstance(result, Artifact):
        return (
            f"SAVED {result.name} bytes={result.size} resolution={result.resolution} "
            f"quality={result.quality} within_budget={int(result.within_budget)}"
        )
    return f"FAILED reason={result.reason} detail={result.detail}"


def make_command_handler(cfg: dict, gate: TriggerGate, store: ArtifactDirectory, orchestrator: CaptureOrchestrator):
    def on_trigger(cmd: str) -> str:
        cmd = cmd.strip()

        if cmd == "press":
            outcome = gate.on_press()
            return "ACCEPTED" if outcome is PressOutcome.ACCEPTED else f"REJECTED {outcome.value}"

        if cmd == "status":
            return (
                f"busy={int(gate.busy)} accepted={gate.accepted} rejected={gate.rejected} "
                f"completed={gate.completed} last={format_result(gate.last_result)}"
            )

        if cmd == "latest":
            entry = store.latest()
            return "NONE" if entry is None else f"{entry.name} {entry.size}"

        if cmd == "list":
            return "\n".join(f"{e.name} {e.size} {e.mtime:.0f}" for e in store.list_images()) or "EMPTY"

        if cmd == "health":
            rss, swap = log_memory("HEALTH ")
            return f"RSS={rss:.1f}MiB SWAP={swap:.1f}%"

        if cmd == "dump_config":
            return json.dumps(cfg, indent=4, sort_keys=True)

        if cmd.startswith("set"):
            parts = cmd.split(maxsplit=2)
            if len(parts) < 3:
                return "ERROR: usage set <key_path> <value>"
            key_path, value = parts[1], parts[2]
            try:
                old_value = get_param(cfg, key_path)
            except (KeyError, TypeError):
                return f"ERROR: invalid key {key_path}"
            if key_path.startswith(RESTART_KEYS):
                return f"ERROR: {key_path} requires restart"

            before = copy.deepcopy(cfg)
            try:
                if not update_cfg(cfg, key_path, value):
                    return f"ERROR: invalid key {key_path}"
                validate_config(cfg)
                encoder = build_encoder(cfg) if key_path in ENCODER_KEYS else orchestrator.encoder
            except (ValueError, ConfigError, BackendUnavailable) as e:
                cfg.clear()
                cfg.update(before)
                logging.warning("Rejected parameter update %s → %s: %s", key_path, value, e)
                return f"ERROR: {e}"

            orchestrator.encoder = encoder
            orchestrator.ladder = build_ladder(cfg)
            orchestrator.budget = int(cfg["encode"]["budget_bytes"])
            logging.info("Parameter updated via trigger: %s : %s → %s", key_path, old_value, value)
            return f"OK: changed {key_path} from {old_value} to {get_param(cfg, key_path)}"

        return "UNKNOWN_COMMAND"

    return on_trigger


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    config_path = argv[0] if argv else "config.json"

    try:
        cfg = load_config(config_path)
    except ConfigError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    setup_logging(cfg)

    try:
        camera = build_capture(cfg)
        encoder = build_encoder(cfg)
    except BackendUnavailable as e:
        logging.critical("Backend unavailable, refusing to start: %s", e)
        return 2
    except CameraServiceError as e:
        logging.critical("Startup failed: %s", e)
        return 2

    store = ArtifactDirectory(cfg["export"])
    orchestrator = CaptureOrchestrator(
        camera,
        encoder,
        store,
        build_ladder(cfg),
        int(cfg["encode"]["budget_bytes"]),
    )
    gate = TriggerGate(orchestrator.run_cycle, lambda: build_request(cfg))
    gate.start()

    button = None
    try:
        from button_source import ButtonSource
        button = ButtonSource(cfg["button"], gate.on_press)
    except HardwareSignalError as e:
        logging.error("%s; continuing with the network trigger only", e)

    servers = []
    trigger_port = cfg["network"].get("trigger_port", 0)
    if trigger_port:
        from trigger_server import TriggerServer
        servers.append(TriggerServer(trigger_port, make_command_handler(cfg, gate, store, orchestrator)))

    viewer_port = cfg["network"].get("viewer_port", 0)
    if viewer_port:
        from viewer_server import ViewerServer
        servers.append(ViewerServer(viewer_port, store, mode=lambda: describe_mode(cfg)))

    for server in servers:
        server.start()

    logging.info("Mode %s. Images in %s", describe_mode(cfg), store.base_dir)

    stop = threading.Event()

    def on_signal(signum, _frame):
        logging.info("Signal %d received, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)

    log_memory()
    while not stop.wait(60):
        log_memory()

    # No new presses from here on; an in-flight cycle still runs to completion
    if button is not None:
        button.close()
    gate.stop()
    for server in servers:
        server.stop()
    logging.info("Bye.")
    return 0


if __name__ == "__main__":
    sys.exit(main())

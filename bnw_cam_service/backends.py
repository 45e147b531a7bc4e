import logging
import os
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import cv2

from metadata import CaptureRequest, Raster


class CameraServiceError(Exception):
    pass


class HardwareSignalError(CameraServiceError):
    pass


class ConfigError(CameraServiceError):
    pass


class BackendUnavailable(CameraServiceError):
    pass


class BackendError(CameraServiceError):
    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


class BackendTimeout(BackendError):
    pass


class BackendNonzeroExit(BackendError):
    def __init__(self, message: str, stderr: str = "", returncode: int = 1) -> None:
        super().__init__(message, stderr)
        self.returncode = returncode


def _text(raw) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode(errors="replace").strip()
    return str(raw).strip()


def run_command(argv: list[str], timeout_s: float, input_bytes: bytes | None = None) -> bytes:
    """
    Run an external binary to completion and return its stdout.
    The child is killed when timeout_s elapses; stderr is kept verbatim on the raised error.
    """
    logging.debug("exec: %s", " ".join(argv))
    try:
        proc = subprocess.run(
            argv,
            input=input_bytes,
            capture_output=True,
            timeout=timeout_s,
            check=False,
        )
    except FileNotFoundError as e:
        raise BackendUnavailable(f"{argv[0]}: not found") from e
    except PermissionError as e:
        raise BackendUnavailable(f"{argv[0]}: not executable") from e
    except subprocess.TimeoutExpired as e:
        raise BackendTimeout(f"{argv[0]} exceeded {timeout_s:g}s", stderr=_text(e.stderr)) from e

    if proc.returncode != 0:
        raise BackendNonzeroExit(
            f"{argv[0]} exited with status {proc.returncode}",
            stderr=_text(proc.stderr),
            returncode=proc.returncode,
        )
    return proc.stdout


def temp_path(tag: str, suffix: str) -> Path:
    fd, name = tempfile.mkstemp(prefix=f"bnw_{os.getpid()}_{tag}_", suffix=suffix)
    os.close(fd)
    return Path(name)


def materialize(raster: Raster, tag: str = "raster") -> tuple[Path, bool]:
    """
    Return a file path for raster, writing a temp PNG if it only lives in memory.
    The bool says whether the caller must delete the returned path.
    """
    if raster.path is not None:
        return raster.path, False
    if raster.data is None:
        raise BackendError("raster was already released")
    path = temp_path(tag, ".png")
    if not cv2.imwrite(str(path), raster.data):
        path.unlink(missing_ok=True)
        raise BackendError("cv2.imwrite failed for in-memory raster")
    return path, True


def probe_binaries(names: list[str]) -> None:
    missing = [n for n in names if shutil.which(n) is None]
    if missing:
        raise BackendUnavailable("required binaries not found: " + ", ".join(missing))


# Tone / geometry recipes

@dataclass(kw_only=True, frozen=True)
class ToneRecipe:
    grayscale: bool = True
    strip: bool = False
    auto_level: bool = False
    sigmoidal_contrast: tuple[float, float] | None = None   # (contrast, midpoint %)
    stretch_pct: float = 0.0
    unsharp: tuple[float, float, float, float] | None = None  # radius, sigma, amount, threshold

    def imagemagick_args(self) -> list[str]:
        args: list[str] = []
        if self.strip:
            args.append("-strip")
        if self.grayscale:
            args += ["-colorspace", "Gray"]
        if self.auto_level:
            args.append("-auto-level")
        if self.sigmoidal_contrast:
            contrast, mid = self.sigmoidal_contrast
            args += ["-sigmoidal-contrast", f"{contrast:g}x{mid:g}%"]
        if self.stretch_pct > 0:
            args += ["-contrast-stretch", f"{self.stretch_pct:g}%x{self.stretch_pct:g}%"]
        if self.unsharp:
            radius, sigma, amount, threshold = self.unsharp
            args += ["-unsharp", f"{radius:g}x{sigma:g}+{amount:g}+{threshold:g}"]
        return args


TONE_RECIPES = {
    "plain": ToneRecipe(auto_level=True, stretch_pct=0.5),
    "classic": ToneRecipe(
        strip=True,
        sigmoidal_contrast=(3, 50),
        stretch_pct=0.5,
        unsharp=(0, 0.75, 0.75, 0.02),
    ),
    "filmish": ToneRecipe(
        sigmoidal_contrast=(5, 50),
        stretch_pct=0.3,
        unsharp=(0, 1, 1, 0.02),
    ),
}


def get_recipe(name: str) -> ToneRecipe:
    try:
        return TONE_RECIPES[name]
    except KeyError:
        raise ConfigError(f"unknown tone recipe {name!r} (known: {', '.join(TONE_RECIPES)})") from None


# Adapter contracts

class CaptureBackend(ABC):
    @abstractmethod
    def capture(self, request: CaptureRequest) -> Raster:
        """Take one still. Raises BackendError (or a subclass) on failure."""

    def required_binaries(self) -> list[str]:
        return []


class RasterTransform(ABC):
    @abstractmethod
    def transform(self, source: Raster, longest_edge: int, recipe: str) -> Raster:
        """Return a new grayscale raster no larger than longest_edge on its long side."""

    def required_binaries(self) -> list[str]:
        return []


class FinalEncoder(ABC):
    extension = "webp"

    @abstractmethod
    def encode(self, raster: Raster, quality: int, size_hint: int | None = None) -> bytes:
        ...

    def required_binaries(self) -> list[str]:
        return []


# Installed-binary variants

def find_capture_binary(explicit: str | None = None) -> str:
    if explicit:
        found = shutil.which(explicit)
        if found is None:
            raise BackendUnavailable(f"capture binary {explicit!r} not found")
        return found
    # rpicam-still replaced libcamera-still on newer Raspberry Pi OS images
    for name in ("rpicam-still", "libcamera-still"):
        found = shutil.which(name)
        if found:
            return found
    raise BackendUnavailable("neither rpicam-still nor libcamera-still is installed")


class RpicamStill(CaptureBackend):
    def __init__(self, binary: str, process_timeout_s: float = 30.0) -> None:
        self.binary = binary
        self.process_timeout_s = process_timeout_s

    def command(self, request: CaptureRequest) -> list[str]:
        argv = [self.binary, "-n", "-t", str(request.timeout_ms), "--encoding", request.output_format]
        if request.width and request.height:
            argv += ["--width", str(request.width), "--height", str(request.height)]
        return argv + ["-o", "-"]

    def capture(self, request: CaptureRequest) -> Raster:
        data = run_command(self.command(request), self.process_timeout_s)
        if not data:
            raise BackendError(f"{self.binary} produced no image data")
        path = temp_path("capture", "." + request.output_format)
        try:
            path.write_bytes(data)
        except OSError as e:
            path.unlink(missing_ok=True)
            raise BackendError(f"cannot store capture: {e}") from e
        return Raster(path=path)

    def required_binaries(self) -> list[str]:
        return [self.binary]


class ImageMagickTransform(RasterTransform):
    def __init__(self, binary: str = "convert", process_timeout_s: float = 40.0) -> None:
        self.binary = binary
        self.process_timeout_s = process_timeout_s

    def command(self, src: Path, out: Path, longest_edge: int, recipe: ToneRecipe) -> list[str]:
        # '>' only ever shrinks
        return (
            [self.binary, str(src), "-resize", f"{longest_edge}x{longest_edge}>"]
            + recipe.imagemagick_args()
            + [f"PNG24:{out}"]
        )

    def transform(self, source: Raster, longest_edge: int, recipe: str) -> Raster:
        tone = get_recipe(recipe)
        src, src_is_temp = materialize(source, "source")
        out = temp_path(f"{longest_edge}", ".png")
        try:
            run_command(self.command(src, out, longest_edge, tone), self.process_timeout_s)
        except Exception:
            out.unlink(missing_ok=True)
            raise
        finally:
            if src_is_temp:
                src.unlink(missing_ok=True)
        return Raster(path=out, longest_edge=longest_edge)

    def required_binaries(self) -> list[str]:
        return [self.binary]


class ImageMagickEncoder(FinalEncoder):
    def __init__(self, fmt: str = "webp", binary: str = "convert", process_timeout_s: float = 60.0) -> None:
        self.extension = fmt
        self.binary = binary
        self.process_timeout_s = process_timeout_s

    def command(self, src: Path, quality: int, size_hint: int | None) -> list[str]:
        argv = [self.binary, str(src)]
        if self.extension == "webp":
            argv += ["-define", "webp:method=6"]
            if size_hint:
                argv += ["-define", f"webp:target-size={size_hint}"]
        elif size_hint:
            argv += ["-define", f"jpeg:extent={size_hint}"]
        return argv + ["-quality", str(quality), f"{self.extension}:-"]

    def encode(self, raster: Raster, quality: int, size_hint: int | None = None) -> bytes:
        src, src_is_temp = materialize(raster, "encode")
        try:
            return run_command(self.command(src, quality, size_hint), self.process_timeout_s)
        finally:
            if src_is_temp:
                src.unlink(missing_ok=True)

    def required_binaries(self) -> list[str]:
        return [self.binary]


class CwebpEncoder(FinalEncoder):
    extension = "webp"

    def __init__(self, binary: str = "cwebp", process_timeout_s: float = 60.0) -> None:
        self.binary = binary
        self.process_timeout_s = process_timeout_s

    def command(self, src: Path, quality: int, size_hint: int | None) -> list[str]:
        argv = [self.binary, "-quiet", "-mt", "-m", "6", "-q", str(quality)]
        if size_hint:
            argv += ["-size", str(size_hint)]
        return argv + [str(src), "-o", "-"]

    def encode(self, raster: Raster, quality: int, size_hint: int | None = None) -> bytes:
        src, src_is_temp = materialize(raster, "encode")
        try:
            return run_command(self.command(src, quality, size_hint), self.process_timeout_s)
        finally:
            if src_is_temp:
                src.unlink(missing_ok=True)

    def required_binaries(self) -> list[str]:
        return [self.binary]


import os
from datetime import datetime
from pathlib import Path

from metadata import ArtifactEntry

STAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
DEFAULT_EXTENSIONS = (".webp", ".jpg", ".jpeg", ".png")


class ArtifactDirectory:
    def __init__(self, cfg: dict) -> None:
        self.cfg = cfg
        self.base_dir = Path(os.path.abspath(cfg["base_dir"]))
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.extensions = tuple(e.lower() for e in cfg.get("extensions", DEFAULT_EXTENSIONS))

    def _unique_path(self, stamp: str, extension: str) -> Path:
        path = self.base_dir / f"{stamp}.{extension}"
        n = 1
        while path.exists():
            path = self.base_dir / f"{stamp}_{n}.{extension}"
            n += 1
        return path

    def write(self, data: bytes, extension: str, when: datetime | None = None) -> Path:
        """Write a new artifact. Existing files are never overwritten."""
        stamp = (when or datetime.now()).strftime(STAMP_FORMAT)
        path = self._unique_path(stamp, extension.lstrip("."))
        # hidden partial name keeps half-written files out of listings
        part = self.base_dir / f".{path.name}.part"
        try:
            with part.open("wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(part, path)
        finally:
            part.unlink(missing_ok=True)
        return path

    def list_images(self) -> list[ArtifactEntry]:
        entries: list[ArtifactEntry] = []
        for item in self.base_dir.iterdir():
            if item.name.startswith(".") or item.suffix.lower() not in self.extensions:
                continue
            try:
                st = item.stat()
            except FileNotFoundError:
                continue
            entries.append(ArtifactEntry(name=item.name, mtime=st.st_mtime, size=st.st_size))
        entries.sort(key=lambda e: (e.mtime, e.name), reverse=True)
        return entries

    def latest(self) -> ArtifactEntry | None:
        entries = self.list_images()
        return entries[0] if entries else None

    def resolve(self, name: str) -> Path | None:
        """Map a listed name back to its file, refusing anything outside base_dir."""
        if not name or "/" in name or "\\" in name or name.startswith("."):
            return None
        path = self.base_dir / name
        if path.suffix.lower() not in self.extensions or not path.is_file():
            return None
        return path

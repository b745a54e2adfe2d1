import hashlib
import logging
import shutil
import time
import uuid
from pathlib import Path

from .models import FileIO, InlineIO, IOValue

logger = logging.getLogger(__name__)


def derive_name(*parts: str) -> str:
    return hashlib.sha256("\0".join(parts).encode()).hexdigest()[:20]


class ScratchDir:
    """Files owned by the judge rather than by any test case.

    Compiled binaries live under ``bin/``, captured output and materialized
    inline data under ``io/``. Names are derived from what they belong to so
    a re-run overwrites its previous files instead of piling up new ones.
    """

    def __init__(self, root: Path):
        self.root = Path(root).absolute()

    @property
    def bin_dir(self) -> Path:
        path = self.root / "bin"
        path.mkdir(parents=True, exist_ok=True)
        return path

    @property
    def io_dir(self) -> Path:
        path = self.root / "io"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def io_path(self, *key: str, suffix: str = "") -> Path:
        return self.io_dir / (derive_name(*key) + suffix)

    def create_io(self) -> Path:
        return self.io_dir / uuid.uuid4().hex

    def materialize(self, io: IOValue, *key: str) -> str:
        """Return a path holding ``io``'s content, writing inline data out."""
        if isinstance(io, FileIO):
            return io.path
        if isinstance(io, InlineIO):
            path = self.io_path(*key, suffix=".txt") if key else self.create_io()
            path.write_text(io.data, encoding="utf-8")
            return str(path)
        raise TypeError(f"not an IO value: {io!r}")

    @staticmethod
    def inline_small(io: IOValue, max_length: int) -> IOValue:
        if isinstance(io, InlineIO):
            return io
        if isinstance(io, FileIO):
            try:
                if Path(io.path).stat().st_size > max_length:
                    return io
                text = Path(io.path).read_text(encoding="utf-8",
                                               errors="replace")
            except OSError:
                return io
            return InlineIO(text)
        raise TypeError(f"not an IO value: {io!r}")

    def prune(self, max_age: float = 3600) -> int:
        """Remove scratch files not touched within ``max_age`` seconds."""
        if not self.root.exists():
            return 0
        now = time.time()
        cleaned = 0
        for file in self.root.rglob("*"):
            if not file.is_file():
                continue
            try:
                if now - file.stat().st_atime > max_age:
                    file.unlink()
                    cleaned += 1
            except OSError as e:
                logger.debug("[Scratch] Cannot remove %s: %s", file, e)
        if cleaned:
            logger.info("[Scratch] Cleaned %d stale files", cleaned)
        return cleaned

    def clean(self):
        if self.root.exists():
            shutil.rmtree(self.root, ignore_errors=True)
        self.root.mkdir(parents=True, exist_ok=True)

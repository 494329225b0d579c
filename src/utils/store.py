import os
import gzip
import json
import shutil
import logging
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

logger = logging.getLogger("file-store")

GZIP_SUFFIX = ".gz"


class FileStore:
    """
    Implementation of a small blob store that reads/writes JSON or text files
    under a base directory.

    Used for durable project snapshots, nothing in the GitHub access layer
    depends on it.
    """

    def __init__(self, base_dir: str, compress: bool = False):
        """
        Initialize the file store

        Args:
            base_dir: Directory every stored path is relative to
            compress: Gzip new files unless a write says otherwise
        """
        self.base_dir = Path(base_dir).resolve()
        self.compress = compress
        os.makedirs(self.base_dir, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        target = (self.base_dir / path).resolve()
        if target != self.base_dir and self.base_dir not in target.parents:
            raise ValueError(f"Path escapes the store directory: {path}")
        return target

    def _existing(self, path: str) -> Optional[Path]:
        target = self._resolve(path)
        if target.exists():
            return target
        compressed = target.with_name(target.name + GZIP_SUFFIX)
        if compressed.exists():
            return compressed
        return None

    def write(
        self,
        path: str,
        data: Any,
        atomic: bool = True,
        compress: Optional[bool] = None,
    ) -> Path:
        """Store data at path. Non-string data is serialized as JSON."""
        compress = self.compress if compress is None else compress
        target = self._resolve(path)
        if compress and not target.name.endswith(GZIP_SUFFIX):
            target = target.with_name(target.name + GZIP_SUFFIX)
        os.makedirs(target.parent, exist_ok=True)

        if isinstance(data, str):
            text = data
        else:
            text = json.dumps(data, indent=2, default=str)
        payload = text.encode("utf-8")
        if compress:
            payload = gzip.compress(payload)

        if not atomic:
            with open(target, "wb") as f:
                f.write(payload)
            return target

        fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        logger.debug(f"Wrote {len(payload)} bytes to {target}")
        return target

    def read(self, path: str) -> Any:
        """
        Read a stored file, transparently decompressing gzip files.

        Returns:
            The decoded JSON value, the raw text when it is not JSON, or None
            when nothing is stored at path.
        """
        target = self._existing(path)
        if target is None:
            return None

        with open(target, "rb") as f:
            raw = f.read()
        if target.name.endswith(GZIP_SUFFIX):
            raw = gzip.decompress(raw)

        text = raw.decode("utf-8")
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text

    def exists(self, path: str) -> bool:
        return self._existing(path) is not None

    def delete(self, path: str, backup: bool = True) -> bool:
        """Remove a stored file, keeping a timestamped copy under backups/."""
        target = self._existing(path)
        if target is None:
            return False

        if backup:
            stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
            relative = target.relative_to(self.base_dir)
            backup_path = self.base_dir / "backups" / relative.parent / (
                f"{stamp}-{relative.name}"
            )
            os.makedirs(backup_path.parent, exist_ok=True)
            shutil.copy2(target, backup_path)
            logger.info(f"Backed up {relative} to {backup_path}")

        os.remove(target)
        return True

    def list(self, prefix: str = "") -> List[str]:
        """Stored paths (relative, posix style) starting with prefix."""
        paths = []
        for root, _, files in os.walk(self.base_dir):
            for name in files:
                if name.startswith("."):
                    continue
                relative = (Path(root) / name).relative_to(self.base_dir).as_posix()
                if relative.startswith(prefix):
                    paths.append(relative)
        return sorted(paths)

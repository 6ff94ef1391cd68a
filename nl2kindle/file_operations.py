import os
import re
import shutil
from datetime import datetime, timedelta
from pathlib import Path

from nl2kindle.logger import get_logger
from nl2kindle.models import utcnow

logger = get_logger("file_operations")

MAX_FILE_NAME_LENGTH = 50


def sanitize_file_name(title: str) -> str:
    """Turn an article title into a safe file stem.

    Keeps ASCII letters, digits, spaces, hyphens and underscores, joins words
    with underscores and truncates to 50 characters. An empty title stays empty.
    """
    if not title:
        return ""
    name = re.sub(r"[^A-Za-z0-9\s\-_]", "", title)
    name = re.sub(r"\s+", "_", name)
    return name[:MAX_FILE_NAME_LENGTH].strip()


class ArtifactStore:
    """Generated books on local disk, one directory per conversion.

    The path returned by :meth:`save` is what the conversion row stores as its
    file URL.
    """

    def __init__(self, base_dir: str | os.PathLike):
        self.base_dir = Path(base_dir).resolve()

    def save(self, conversion_id: str, filename: str, content: bytes) -> str:
        target_dir = self.base_dir / conversion_id
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / Path(filename).name
        path.write_bytes(content)
        logger.debug(f"Saved artifact {path} ({len(content)} bytes)")
        return str(path)

    def resolve(self, file_url: str) -> Path:
        """Map a stored file URL back to a path inside the store."""
        path = Path(file_url).resolve()
        if self.base_dir not in path.parents:
            raise ValueError(f"Artifact outside store: {file_url}")
        return path

    def read(self, file_url: str) -> bytes:
        return self.resolve(file_url).read_bytes()

    def delete(self, conversion_id: str) -> bool:
        target_dir = self.base_dir / conversion_id
        if not target_dir.exists():
            return False
        try:
            shutil.rmtree(target_dir)
            return True
        except OSError as e:
            logger.warning(f"Could not delete artifacts for {conversion_id}: {e}")
            return False


def is_download_expired(completed_at: datetime | None, retention_days: int, now: datetime | None = None) -> bool:
    if completed_at is None:
        return True
    now = now or utcnow()
    return now - completed_at > timedelta(days=retention_days)

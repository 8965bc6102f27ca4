import json
import logging
import os
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Generator, List, Optional

from .errors import NotFoundError, StorageError


BASE_DIR = Path(__file__).resolve().parent

logger = logging.getLogger("archive.storage")


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


STORAGE_ROOT = _resolve_env_path("ARCHIVE_STORAGE_ROOT", BASE_DIR)
DATA_DIR = _resolve_env_path("ARCHIVE_DATA_DIR", STORAGE_ROOT / "data")
UPLOADS_DIR = _resolve_env_path("ARCHIVE_UPLOADS_DIR", DATA_DIR / "uploads")
LOGS_DIR = _resolve_env_path("ARCHIVE_LOGS_DIR", STORAGE_ROOT / "logs")
DATA_FILE = DATA_DIR / "data.json"

BYTES_PER_MB = 1024 * 1024


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logging.getLogger("archive.config").warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


DEFAULT_MAX_UPLOAD_MB = _safe_int_env("MAX_UPLOAD_SIZE_MB", 500)
DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR = _safe_int_env("ARCHIVE_RATE_LIMIT_UPLOADS_PER_HOUR", 100)
DEFAULT_WRITE_RATE_LIMIT_PER_MINUTE = _safe_int_env("ARCHIVE_RATE_LIMIT_WRITES_PER_MINUTE", 120)


def ensure_directories() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


def generate_id() -> str:
    return uuid.uuid4().hex


def empty_document() -> Dict[str, List[dict]]:
    return {"folders": [], "files": []}


def _normalize_document(raw: object) -> Dict[str, List[dict]]:
    if not isinstance(raw, dict):
        return empty_document()
    document = dict(raw)
    for key in ("folders", "files"):
        entries = document.get(key)
        if not isinstance(entries, list):
            document[key] = []
            continue
        records = [entry for entry in entries if isinstance(entry, dict)]
        if len(records) != len(entries):
            logger.warning(
                "metadata_entries_dropped key=%s dropped=%d",
                key,
                len(entries) - len(records),
            )
        document[key] = records
    return document


class MetadataStore:
    """The folder/file tree, persisted as a single JSON document.

    Every mutation rewrites the whole document. Reads never fail: a missing
    or corrupt document is treated as empty so the service stays available.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.RLock()

    def initialize(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.write(empty_document())
            logger.info("metadata_initialized path=%s", self.path)

    def read(self) -> Dict[str, List[dict]]:
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except FileNotFoundError:
            return empty_document()
        except (OSError, ValueError) as error:
            logger.warning(
                "metadata_read_failed path=%s error=%s - using empty document",
                self.path,
                error,
            )
            return empty_document()
        return _normalize_document(raw)

    def write(self, document: Dict[str, List[dict]]) -> None:
        temp_path = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with temp_path.open("w", encoding="utf-8") as handle:
                json.dump(document, handle, separators=(",", ":"))
                handle.flush()
                os.fsync(handle.fileno())
            # Atomic rename on POSIX systems (overwrites destination)
            temp_path.replace(self.path)
        except OSError as error:
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError:
                    pass
            logger.error("metadata_write_failed path=%s error=%s", self.path, error)
            raise StorageError("Could not save data") from error

    @contextmanager
    def transaction(self) -> Generator[Dict[str, List[dict]], None, None]:
        """Read the document, yield it for mutation and write it back.

        Nothing is written when the block raises. The lock only serializes
        writers inside this process; separate processes still race and the
        last writer wins.
        """

        with self._lock:
            document = self.read()
            yield document
            self.write(document)


class BlobStore:
    """Raw upload content, one file per id directly under *root*."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def initialize(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, blob_id: str) -> Path:
        if not blob_id or blob_id in {".", ".."} or "/" in blob_id or "\\" in blob_id:
            raise NotFoundError("File not found")
        return self.root / blob_id

    def exists(self, blob_id: str) -> bool:
        try:
            return self.path_for(blob_id).is_file()
        except NotFoundError:
            return False

    def put(self, blob_id: str, data: bytes) -> None:
        path = self.path_for(blob_id)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as error:
            logger.error("blob_write_failed blob_id=%s error=%s", blob_id, error)
            raise StorageError("Could not store file") from error

    def get(self, blob_id: str) -> Optional[bytes]:
        try:
            return self.path_for(blob_id).read_bytes()
        except (NotFoundError, FileNotFoundError):
            return None

    def delete(self, blob_id: str) -> bool:
        """Remove a blob. Returns False when there was nothing to remove."""

        try:
            path = self.path_for(blob_id)
        except NotFoundError:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as error:
            logger.error("blob_delete_failed blob_id=%s error=%s", blob_id, error)
            raise StorageError("Could not delete file") from error
        return True

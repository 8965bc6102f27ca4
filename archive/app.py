import logging
import mimetypes
import os
import re
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from flask import (
    Blueprint,
    Flask,
    Response,
    current_app,
    g,
    has_request_context,
    jsonify,
    request,
    send_file,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage

from . import tree
from .errors import ArchiveError, NotFoundError, StorageError, ValidationError
from .storage import (
    BYTES_PER_MB,
    DATA_FILE,
    DEFAULT_MAX_UPLOAD_MB,
    DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR,
    DEFAULT_WRITE_RATE_LIMIT_PER_MINUTE,
    LOGS_DIR,
    UPLOADS_DIR,
    BlobStore,
    MetadataStore,
    ensure_directories,
)

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUP_COUNT = 3
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(level=numeric_level, format=LOG_FORMAT)

CORS_ORIGIN = os.environ.get("ARCHIVE_CORS_ORIGIN", "*")
_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")

IMAGE_MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "bmp": "image/bmp",
    "svg": "image/svg+xml",
}


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


class RequestIdAdapter(logging.LoggerAdapter):
    """Prefix messages logged while serving a request with its id."""

    def process(self, msg, kwargs):
        request_id = getattr(g, "request_id", None) if has_request_context() else None
        if request_id:
            msg = f"request_id={request_id} {msg}"
        return msg, kwargs


def _configure_file_logging() -> Path:
    """Mirror the root logger into ``application.log`` under the logs directory."""

    ensure_directories()
    log_path = LOGS_DIR / "application.log"
    root_logger = logging.getLogger()
    if any(getattr(h, "baseFilename", None) == str(log_path) for h in root_logger.handlers):
        return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(file_handler)
    return log_path


APP_LOG_PATH = _configure_file_logging()

_base_lifecycle_logger = logging.getLogger("archive.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestIdAdapter(_base_lifecycle_logger, {})

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri="memory://",
)

api = Blueprint("archive", __name__)


def init_stores(
    flask_app: Flask,
    metadata_store: Optional[MetadataStore] = None,
    blob_store: Optional[BlobStore] = None,
) -> None:
    """Make sure both stores exist on disk and attach them to *flask_app*."""

    metadata_store = metadata_store or MetadataStore(DATA_FILE)
    blob_store = blob_store or BlobStore(UPLOADS_DIR)
    metadata_store.initialize()
    blob_store.initialize()
    flask_app.extensions["archive"] = {"metadata": metadata_store, "blobs": blob_store}


def create_app(
    metadata_store: Optional[MetadataStore] = None,
    blob_store: Optional[BlobStore] = None,
) -> Flask:
    """Build the archive app around the given stores.

    Stores left as ``None`` default to the configured data file and uploads
    directory.
    """

    flask_app = Flask(__name__)
    flask_app.config["MAX_CONTENT_LENGTH"] = DEFAULT_MAX_UPLOAD_MB * BYTES_PER_MB
    flask_app.logger.setLevel(numeric_level)
    limiter.init_app(flask_app)
    init_stores(flask_app, metadata_store, blob_store)
    flask_app.register_blueprint(api)
    return flask_app


def get_metadata_store() -> MetadataStore:
    return current_app.extensions["archive"]["metadata"]


def get_blob_store() -> BlobStore:
    return current_app.extensions["archive"]["blobs"]


def upload_rate_limit_string() -> str:
    return f"{DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR} per hour"


def write_rate_limit_string() -> str:
    return f"{DEFAULT_WRITE_RATE_LIMIT_PER_MINUTE} per minute"


@api.before_app_request
def add_request_id() -> None:
    g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex


@api.after_app_request
def finish_response(response: Response):
    """Log the completed request and attach CORS and request-id headers."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d size=%s",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
        response.content_length or 0,
    )
    response.headers["Access-Control-Allow-Origin"] = CORS_ORIGIN
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-Request-ID"
    if "request_id" in g:
        response.headers["X-Request-ID"] = g.request_id
    return response


@api.app_errorhandler(ArchiveError)
def handle_archive_error(error: ArchiveError):
    if isinstance(error, StorageError):
        lifecycle_logger.exception(
            "storage_error path=%s", sanitize_log_value(request.path)
        )
    return jsonify({"error": error.message}), error.status_code


@api.app_errorhandler(404)
def not_found(error):
    return jsonify({"error": "Not found"}), 404


@api.app_errorhandler(413)
def handle_file_too_large(error):  # pragma: no cover - framework hook
    return jsonify({"error": "File too large"}), 413


@api.app_errorhandler(429)
def handle_rate_limit(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Too many requests")
    return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def content_type_for(record: dict) -> str:
    file_type = (record.get("type") or "").lower()
    if file_type in IMAGE_MIME_TYPES:
        return IMAGE_MIME_TYPES[file_type]
    guessed, _ = mimetypes.guess_type(record.get("name") or "")
    return guessed or "application/octet-stream"


def discard_blobs(blobs: BlobStore, blob_ids: Iterable[str], context: str) -> None:
    """Remove blobs whose metadata is already gone; failures only orphan them."""

    for blob_id in blob_ids:
        try:
            blobs.delete(blob_id)
        except StorageError:
            lifecycle_logger.warning(
                "blob_discard_failed context=%s blob_id=%s", context, blob_id
            )


@api.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    metadata = get_metadata_store()
    if metadata.path.is_file():
        document = metadata.read()
        checks["metadata"] = "ok"
        checks["folders"] = len(document["folders"])
        checks["files"] = len(document["files"])
    else:
        checks["metadata"] = "missing"
        healthy = False

    blobs = get_blob_store()
    if blobs.root.is_dir() and os.access(blobs.root, os.W_OK):
        checks["uploads"] = "ok"
    else:
        checks["uploads"] = "not writable"
        healthy = False

    status = "healthy" if healthy else "unhealthy"
    return jsonify({"status": status, "checks": checks}), 200 if healthy else 503


@api.route("/api/structure", methods=["GET"])
def get_structure():
    document = get_metadata_store().read()
    return jsonify({"folders": document["folders"], "files": document["files"]})


@api.route("/api/file/<file_id>", methods=["GET"])
def get_file_content(file_id: str):
    document = get_metadata_store().read()
    record = tree.find_file(document, file_id)
    if record is None:
        lifecycle_logger.warning("file_download_missing file_id=%s", sanitize_log_value(file_id))
        raise NotFoundError("File not found")

    blobs = get_blob_store()
    if not blobs.exists(file_id):
        lifecycle_logger.warning("file_download_missing_blob file_id=%s", file_id)
        raise NotFoundError("File not found")

    as_attachment = request.args.get("download") == "1"
    lifecycle_logger.info(
        "file_downloaded file_id=%s attachment=%s", file_id, as_attachment
    )
    try:
        return send_file(
            blobs.path_for(file_id),
            mimetype=content_type_for(record),
            as_attachment=as_attachment,
            download_name=record.get("name") or "download",
        )
    except FileNotFoundError:
        lifecycle_logger.warning("file_download_missing_race file_id=%s", file_id)
        raise NotFoundError("File not found")


@api.route("/api/folder", methods=["POST"])
@limiter.limit(lambda: write_rate_limit_string())
def create_folder():
    data = _json_body()
    with get_metadata_store().transaction() as document:
        folder = tree.create_folder(document, data.get("name"), data.get("parentId"))

    lifecycle_logger.info(
        "folder_created folder_id=%s name=%s parent_id=%s",
        folder["id"],
        sanitize_log_value(folder["name"]),
        sanitize_log_value(folder["parentId"]),
    )
    return jsonify(folder)


def _uploaded_parts() -> List[FileStorage]:
    # Browsers send a part with an empty filename when no file was picked.
    return [
        file_storage
        for _, file_storage in request.files.items(multi=True)
        if file_storage.filename
    ]


@api.route("/api/upload", methods=["POST"])
@limiter.limit(lambda: upload_rate_limit_string())
def upload_files():
    parts = _uploaded_parts()
    if not parts:
        raise ValidationError("No files")

    folder_id = request.form.get("folderId")
    blobs = get_blob_store()
    added: List[dict] = []
    stored_ids: List[str] = []
    try:
        with get_metadata_store().transaction() as document:
            for file_storage in parts:
                try:
                    content = file_storage.read()
                finally:
                    file_storage.close()
                record = tree.add_file(document, file_storage.filename, len(content), folder_id)
                blobs.put(record["id"], content)
                stored_ids.append(record["id"])
                added.append(record)
    except StorageError:
        discard_blobs(blobs, stored_ids, "upload_rollback")
        raise

    for record in added:
        lifecycle_logger.info(
            "file_uploaded file_id=%s name=%s size=%d folder_id=%s",
            record["id"],
            sanitize_log_value(record["name"]),
            record["size"],
            sanitize_log_value(record["folderId"]),
        )
    return jsonify({"files": added})


@api.route("/api/folder/<folder_id>", methods=["PUT"])
@limiter.limit(lambda: write_rate_limit_string())
def update_folder(folder_id: str):
    data = _json_body()
    with get_metadata_store().transaction() as document:
        folder = tree.update_folder(
            document,
            folder_id,
            name=data["name"] if "name" in data else tree.UNSET,
            parent_id=data["parentId"] if "parentId" in data else tree.UNSET,
        )

    lifecycle_logger.info(
        "folder_updated folder_id=%s name=%s parent_id=%s",
        folder_id,
        sanitize_log_value(folder["name"]),
        sanitize_log_value(folder["parentId"]),
    )
    return jsonify(folder)


@api.route("/api/file/<file_id>", methods=["PUT"])
@limiter.limit(lambda: write_rate_limit_string())
def update_file(file_id: str):
    data = _json_body()
    with get_metadata_store().transaction() as document:
        record = tree.update_file(
            document,
            file_id,
            name=data["name"] if "name" in data else tree.UNSET,
            folder_id=data["folderId"] if "folderId" in data else tree.UNSET,
        )

    lifecycle_logger.info(
        "file_updated file_id=%s name=%s folder_id=%s",
        file_id,
        sanitize_log_value(record["name"]),
        sanitize_log_value(record["folderId"]),
    )
    return jsonify(record)


@api.route("/api/folder/<folder_id>", methods=["DELETE"])
@limiter.limit(lambda: write_rate_limit_string())
def delete_folder(folder_id: str):
    # Blobs go only after the document without their records is saved.
    with get_metadata_store().transaction() as document:
        folder_ids, removed_files = tree.delete_folder(document, folder_id)
    discard_blobs(get_blob_store(), (f["id"] for f in removed_files), "folder_delete")

    lifecycle_logger.info(
        "folder_deleted folder_id=%s folders=%d files=%d",
        folder_id,
        len(folder_ids),
        len(removed_files),
    )
    return "", 204


@api.route("/api/file/<file_id>", methods=["DELETE"])
@limiter.limit(lambda: write_rate_limit_string())
def delete_file(file_id: str):
    with get_metadata_store().transaction() as document:
        record = tree.delete_file(document, file_id)
    discard_blobs(get_blob_store(), [file_id], "file_delete")

    lifecycle_logger.info(
        "file_deleted file_id=%s name=%s",
        file_id,
        sanitize_log_value(record.get("name")),
    )
    return "", 204


app = create_app()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "3000")), debug=False)

"""Upload API routes for audioheaven"""

import os
from typing import Any

from flask import Blueprint, Response, jsonify, request

from audioheaven.errors import PayloadTooLarge, ValidationError
from audioheaven.extensions import get_services

upload_bp = Blueprint("upload", __name__)

# Audio formats ffmpeg can decode
ALLOWED_TYPES = [
    "audio/mpeg",
    "audio/mp3",
    "audio/wav",
    "audio/wave",
    "audio/x-wav",
    "audio/ogg",
    "audio/vorbis",
    "audio/flac",
    "audio/x-flac",
    "audio/webm",
    "audio/aac",
    "audio/mp4",
    "audio/x-m4a",
    "audio/m4a",
    "audio/aiff",
    "audio/x-aiff",
    "audio/opus",
    "audio/x-opus",
    "audio/amr",
    "audio/3gpp",
    "audio/3gpp2",
    "audio/ac3",
    "audio/eac3",
    "audio/x-ms-wma",
    "audio/x-matroska",
    "audio/ape",
    "audio/x-ape",
    "audio/x-tta",
    "audio/speex",
    "audio/x-speex",
    "audio/musepack",
    "audio/x-musepack",
    "audio/wavpack",
    "audio/x-wavpack",
]


def json_body() -> dict[str, Any]:
    """Parsed JSON object body of the current request."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _require_upload_id(value: Any) -> str:
    if not isinstance(value, str) or not value:
        raise ValidationError("uploadId is required")
    return value


def _parse_file_size(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("fileSize must be a number")
    if isinstance(value, float) and not value.is_integer():
        raise ValidationError("fileSize must be a whole number of bytes")
    return int(value)


def _check_audio_type(mime_type: str | None) -> None:
    if mime_type and not mime_type.startswith("audio/"):
        raise ValidationError("Only audio files are allowed")


@upload_bp.route("/config", methods=["GET"])
def get_config() -> tuple[Response, int]:
    """Upload limits and accepted MIME types for the client."""
    sessions = get_services().sessions
    return jsonify(
        {
            "maxFileSize": sessions.max_file_size,
            "chunkSize": sessions.chunk_size,
            "allowedTypes": ALLOWED_TYPES,
        }
    ), 200


@upload_bp.route("/init", methods=["POST"])
def init_upload() -> tuple[Response, int]:
    """Start a chunked upload.

    Expects JSON with fileName, fileSize and optionally mimeType.

    Returns:
        JSON with uploadId, chunkSize and totalChunks
    """
    data = json_body()
    file_name = data.get("fileName")
    file_size = data.get("fileSize")
    if not file_name or file_size is None:
        raise ValidationError("Missing fileName or fileSize")
    if not isinstance(file_name, str):
        raise ValidationError("fileName must be a string")

    mime_type = data.get("mimeType")
    _check_audio_type(mime_type if isinstance(mime_type, str) else None)

    result = get_services().sessions.init_session(file_name, _parse_file_size(file_size))
    return jsonify(
        {
            "uploadId": result["sessionId"],
            "chunkSize": result["chunkSize"],
            "totalChunks": result["totalChunks"],
        }
    ), 200


@upload_bp.route("/chunk", methods=["POST"])
def upload_chunk() -> tuple[Response, int]:
    """Store one chunk of a chunked upload.

    Expects multipart/form-data with uploadId, chunkIndex and the chunk
    bytes in the ``chunk`` file field.

    Returns:
        JSON with received, total and complete
    """
    upload_id = request.form.get("uploadId")
    chunk_index = request.form.get("chunkIndex")
    chunk = request.files.get("chunk")

    if not upload_id or chunk_index is None or chunk is None:
        raise ValidationError("Missing uploadId, chunkIndex, or chunk")

    try:
        index = int(chunk_index)
    except ValueError:
        raise ValidationError("chunkIndex must be an integer") from None

    result = get_services().sessions.write_chunk(upload_id, index, chunk.read())
    return jsonify(result), 200


@upload_bp.route("/finalize", methods=["POST"])
def finalize_upload() -> tuple[Response, int]:
    """Assemble a completed chunked upload into a stored file.

    Returns:
        JSON with fileId, fileName and filePath
    """
    upload_id = _require_upload_id(json_body().get("uploadId"))
    result = get_services().sessions.finalize(upload_id)
    return jsonify(result), 200


@upload_bp.route("/cancel", methods=["POST"])
def cancel_upload() -> tuple[Response, int]:
    """Abort a chunked upload. Unknown ids are accepted silently."""
    upload_id = _require_upload_id(json_body().get("uploadId"))
    get_services().sessions.cancel(upload_id)
    return jsonify({"cancelled": True}), 200


@upload_bp.route("/status/<upload_id>", methods=["GET"])
def get_upload_status(upload_id: str) -> tuple[Response, int]:
    """Progress of a chunked upload, or ``{"exists": false}``."""
    return jsonify(get_services().sessions.status(upload_id)), 200


@upload_bp.route("", methods=["POST"])
def simple_upload() -> tuple[Response, int]:
    """Single-shot upload of a whole file in the ``file`` form field.

    Returns:
        JSON with fileId and fileName
    """
    services = get_services()
    uploaded = request.files.get("file")
    if uploaded is None:
        raise ValidationError("No file provided")
    if not uploaded.mimetype.startswith("audio/"):
        raise ValidationError("Only audio files are allowed")

    stream = uploaded.stream
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(0)
    if size == 0:
        raise ValidationError("Empty file")
    if size > services.sessions.max_file_size:
        raise PayloadTooLarge(
            f"File too large. Max: {services.sessions.max_file_size // (1024 * 1024)}MB"
        )

    file_name = uploaded.filename or "audio"
    stored = services.blob_store.uploads.store(stream, file_name)

    services.log.info(
        "upload",
        "upload_stored",
        f"Stored {file_name} ({size} bytes)",
        {"file_id": stored.file_id, "file_name": file_name, "size_bytes": size},
    )

    return jsonify({"fileId": stored.file_id, "fileName": stored.name}), 200

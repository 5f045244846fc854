"""Download route for processed audio"""

from flask import Blueprint, Response, send_file

from audioheaven.errors import NotFoundError
from audioheaven.extensions import get_services
from audioheaven.services.effects import OUTPUT_MIMETYPE

download_bp = Blueprint("download", __name__)


@download_bp.route("/<file_id>", methods=["GET"])
def download_output(file_id: str) -> Response:
    """Serve a processed file as an attachment under its display name."""
    stored = get_services().blob_store.outputs.get(file_id)
    if stored is None:
        raise NotFoundError("File not found or expired")

    return send_file(
        stored.path,
        mimetype=OUTPUT_MIMETYPE,
        as_attachment=True,
        download_name=stored.name,
    )

"""Processing API routes for audioheaven"""

import json
import time
from collections.abc import Generator

from flask import Blueprint, Response, jsonify

from audioheaven.errors import JobNotFound, UploadNotFound, ValidationError
from audioheaven.extensions import get_services
from audioheaven.routes.upload import json_body
from audioheaven.services.effects import options_from_request
from audioheaven.services.event_broker import is_terminal

process_bp = Blueprint("process", __name__)

KEEPALIVE_SECONDS = 15.0
CLOSE_DELAY_SECONDS = 0.1


@process_bp.route("", methods=["POST"])
def start_processing() -> tuple[Response, int]:
    """Start an effects job on a stored upload.

    Expects JSON with fileId and preset, plus speed, pitch, reverb,
    bassBoost and panSpeed when preset is "custom".
    Returns immediately with jobId (202 Accepted); progress is streamed on
    /api/audio/process/progress/<jobId>.
    """
    data = json_body()
    file_id = data.get("fileId")
    if not isinstance(file_id, str) or not file_id:
        raise ValidationError("No fileId provided")

    services = get_services()
    if services.blob_store.uploads.get(file_id) is None:
        raise UploadNotFound()

    options = options_from_request(data)
    result = services.jobs.start_job(file_id, options)
    return jsonify(result), 202


@process_bp.route("/progress/<job_id>", methods=["GET"])
def stream_progress(job_id: str) -> Response:
    """Stream job events via Server-Sent Events.

    The first frame is the job's current state, so late subscribers still
    see the terminal event. The stream ends shortly after a terminal event.
    """
    subscription = get_services().jobs.subscribe(job_id)

    def generate() -> Generator[str, None, None]:
        try:
            while True:
                event = subscription.get(timeout=KEEPALIVE_SECONDS)
                if event is None:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(event)}\n\n"
                if is_terminal(event):
                    time.sleep(CLOSE_DELAY_SECONDS)
                    return
        finally:
            subscription.close()

    response = Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
    # A generator that never started does not run its finally block
    response.call_on_close(subscription.close)
    return response


@process_bp.route("/status/<job_id>", methods=["GET"])
def get_status(job_id: str) -> tuple[Response, int]:
    """Get current status of a job (non-streaming)."""
    job = get_services().jobs.get_job(job_id)
    if job is None:
        raise JobNotFound()

    with job.lock:
        data = job.to_dict()
    return jsonify(data), 200


@process_bp.route("/cancel/<job_id>", methods=["POST"])
def cancel_job(job_id: str) -> tuple[Response, int]:
    """Cancel a pending or running job."""
    if not get_services().jobs.cancel_job(job_id):
        raise JobNotFound()
    return jsonify({"cancelled": True, "jobId": job_id}), 200

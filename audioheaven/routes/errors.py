"""JSON error responses for the API."""

from flask import Flask, Response, jsonify
from werkzeug.exceptions import InternalServerError, RequestEntityTooLarge

from audioheaven.errors import AudioHeavenError, PayloadTooLarge


def handle_app_error(error: AudioHeavenError) -> tuple[Response, int]:
    return jsonify(error.to_dict()), error.status_code


def handle_too_large(_error: RequestEntityTooLarge) -> tuple[Response, int]:
    error = PayloadTooLarge()
    return jsonify(error.to_dict()), error.status_code


def handle_internal_error(_error: InternalServerError) -> tuple[Response, int]:
    return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR"}), 500


def register_error_handlers(app: Flask) -> None:
    app.register_error_handler(AudioHeavenError, handle_app_error)
    app.register_error_handler(RequestEntityTooLarge, handle_too_large)
    app.register_error_handler(InternalServerError, handle_internal_error)

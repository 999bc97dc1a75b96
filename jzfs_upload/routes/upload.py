"""Upload API routes for jzfs_upload"""

import json
import time
from collections import deque
from collections.abc import Generator
from typing import Any

from flask import Blueprint, Response, jsonify, request

from jzfs_upload.services.files import FileDescriptor
from jzfs_upload.services.upload_manager import get_batch_controller

upload_bp = Blueprint("upload", __name__)


def _sse(data: dict[str, Any]) -> str:
    return f"data: {json.dumps(data, default=str)}\n\n"


@upload_bp.route("/state", methods=["GET"])
def get_state() -> tuple[Response, int]:
    """Get a snapshot of the upload session.

    Returns:
        JSON response with batch status and per-file states
    """
    return jsonify(get_batch_controller().snapshot()), 200


@upload_bp.route("/files", methods=["PUT"])
def set_files() -> tuple[Response, int]:
    """Select local files for upload.

    Request body:
        files: list of {"local_path": str, "path": optional relative path}
        append: add to the current selection instead of replacing it (default: false)

    Returns:
        JSON response with the new session snapshot and any skipped paths
    """
    data = request.get_json(silent=True)
    if not data or not isinstance(data.get("files"), list):
        return jsonify({"error": "JSON body with a 'files' list required"}), 400

    descriptors: list[FileDescriptor] = []
    missing: list[str] = []
    for item in data["files"]:
        if isinstance(item, str):
            item = {"local_path": item}
        if not isinstance(item, dict) or not isinstance(item.get("path", ""), str | None):
            return jsonify({"error": "Each file must be a path or a local_path object"}), 400
        local_path = str(item.get("local_path", ""))
        try:
            descriptors.append(FileDescriptor.from_local_path(local_path, item.get("path")))
        except FileNotFoundError:
            missing.append(local_path)

    controller = get_batch_controller()
    try:
        if data.get("append"):
            accepted = controller.add_files(descriptors)
        else:
            accepted = controller.set_files(descriptors)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    if not accepted:
        return jsonify({"error": "Upload in progress"}), 409

    body = controller.snapshot()
    body["missing"] = missing
    return jsonify(body), 200


@upload_bp.route("/files", methods=["DELETE"])
def remove_file() -> tuple[Response, int]:
    """Remove one candidate from the selection.

    Query params:
        path: relative path of the file to remove
    """
    path = request.args.get("path", "")
    controller = get_batch_controller()
    if controller.is_running:
        return jsonify({"error": "Upload in progress"}), 409
    if not controller.remove_file(path):
        return jsonify({"error": f"No such file: {path}"}), 404
    return jsonify(controller.snapshot()), 200


@upload_bp.route("/path", methods=["PUT"])
def set_path() -> tuple[Response, int]:
    """Change the destination path inside the branch."""
    data = request.get_json(silent=True)
    if not data or not isinstance(data.get("path"), str):
        return jsonify({"error": "JSON body with a 'path' string required"}), 400

    controller = get_batch_controller()
    if not controller.set_path(data["path"]):
        return jsonify({"error": "Upload in progress"}), 409
    return jsonify(controller.snapshot()), 200


@upload_bp.route("/start", methods=["POST"])
def start_upload() -> tuple[Response, int]:
    """Start uploading the selected files in the background.

    Progress is streamed via SSE on /api/upload/progress.
    """
    controller = get_batch_controller()
    if not controller.files:
        return jsonify({"error": "No files selected"}), 400
    if not controller.start():
        return jsonify({"error": "Upload already in progress"}), 409
    return jsonify(controller.snapshot()), 202


@upload_bp.route("/cancel", methods=["POST"])
def cancel_upload() -> tuple[Response, int]:
    """Cancel the running batch."""
    controller = get_batch_controller()
    cancelled = controller.request_cancel()
    return jsonify({"success": cancelled, "batch": controller.snapshot()}), 200


@upload_bp.route("/reset", methods=["POST"])
def reset_upload() -> tuple[Response, int]:
    """Clear a finished session."""
    controller = get_batch_controller()
    if not controller.reset():
        return jsonify({"error": "Upload in progress"}), 409
    return jsonify(controller.snapshot()), 200


@upload_bp.route("/hide", methods=["POST"])
def hide_upload() -> tuple[Response, int]:
    """Close the session, cancelling a running batch first."""
    controller = get_batch_controller()
    controller.hide()
    return jsonify(controller.snapshot()), 200


@upload_bp.route("/progress", methods=["GET"])
def get_progress() -> Response:
    """Stream per-file transitions and the batch outcome via Server-Sent Events.

    Returns:
        SSE stream ending with a 'batch_finished' event (or a snapshot when idle)
    """
    controller = get_batch_controller()

    def generate() -> Generator[str, None, None]:
        queue: deque[dict[str, Any]] = deque()
        listener = queue.append
        controller.subscribe(listener)
        try:
            yield _sse({"type": "snapshot", "batch": controller.snapshot()})
            if not controller.is_running and not queue:
                return

            while True:
                while queue:
                    data = queue.popleft()
                    yield _sse(data)
                    if data.get("type") == "batch_finished":
                        return

                # Small delay to prevent busy waiting
                time.sleep(0.1)

                if not controller.is_running and not queue:
                    yield _sse({"type": "snapshot", "batch": controller.snapshot()})
                    return
        finally:
            controller.unsubscribe(listener)

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )

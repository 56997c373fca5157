"""
Flask JSON API for batch folder ingestion.

Routes:
    POST   /api/images/batch/process     Start a batch for a server-side folder
    GET    /api/images/batch             List all batches
    GET    /api/images/batch/<id>        Poll one batch
    POST   /api/images/batch/<id>/pause  Pause a processing batch
    POST   /api/images/batch/<id>/resume Resume a paused batch
    DELETE /api/images/batch/completed   Remove finished batches
    DELETE /api/images/batch/<id>        Remove (and cancel) one batch
"""

import logging

from flask import Flask, current_app, jsonify, request

from pipeline.processor import BatchProcessor, InvalidPathError

logger = logging.getLogger(__name__)

PROCESSOR_KEY = "batch_processor"


def _processor() -> BatchProcessor:
    return current_app.extensions[PROCESSOR_KEY]


def _error(message: str, status: int):
    return jsonify({"success": False, "error": message}), status


def create_app(processor: BatchProcessor | None = None) -> Flask:
    """
    Create the Flask application.

    Args:
        processor: Batch processor to serve. A default one (env-configured
                   database and OpenAI client) is created if omitted.

    Returns:
        Configured Flask app.
    """
    app = Flask(__name__)
    app.extensions[PROCESSOR_KEY] = processor or BatchProcessor()

    @app.post("/api/images/batch/process")
    def start_batch():
        """Start processing a folder; returns the batch id immediately."""
        payload = request.get_json(silent=True) or {}
        folder_path = payload.get("folderPath") or payload.get("folder_path")

        if not folder_path or not isinstance(folder_path, str):
            return _error("folderPath is required", 400)

        try:
            batch_id = _processor().start(folder_path, payload.get("options"))
        except InvalidPathError as e:
            return _error(str(e), 400)
        except ValueError as e:
            return _error(f"Invalid options: {e}", 400)

        return jsonify({"success": True, "batchId": batch_id}), 202

    @app.get("/api/images/batch")
    def list_batches():
        return jsonify({"success": True, "batches": _processor().list_all()})

    @app.get("/api/images/batch/<batch_id>")
    def batch_status(batch_id: str):
        result = _processor().get_status(batch_id)
        if result is None:
            return _error("Batch not found", 404)
        return jsonify({"success": True, "result": result})

    @app.post("/api/images/batch/<batch_id>/pause")
    def pause_batch(batch_id: str):
        processor = _processor()
        if processor.get_status(batch_id) is None:
            return _error("Batch not found", 404)
        if not processor.pause(batch_id):
            return _error("Batch is not processing", 409)
        return jsonify({"success": True, "status": "paused"})

    @app.post("/api/images/batch/<batch_id>/resume")
    def resume_batch(batch_id: str):
        processor = _processor()
        if processor.get_status(batch_id) is None:
            return _error("Batch not found", 404)
        if not processor.resume(batch_id):
            return _error("Batch is not paused", 409)
        return jsonify({"success": True, "status": "processing"})

    @app.delete("/api/images/batch/completed")
    def clear_completed():
        cleared = _processor().clear_terminal()
        return jsonify({"success": True, "cleared": cleared})

    @app.delete("/api/images/batch/<batch_id>")
    def delete_batch(batch_id: str):
        if not _processor().delete(batch_id):
            return _error("Batch not found", 404)
        return jsonify({"success": True})

    return app


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    print("Starting batch ingestion API...")
    print("POST folders to http://127.0.0.1:5000/api/images/batch/process")
    create_app().run(debug=False, host="127.0.0.1", port=5000)

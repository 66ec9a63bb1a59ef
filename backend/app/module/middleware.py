# Test Case Generator - Middleware
# Description: request timing/logging and the JSON error handlers

import time
import traceback

from pydantic import ValidationError
from quart import Response, jsonify, g, request
from werkzeug.exceptions import HTTPException

from backend.app.services.ai import ProviderError, ProviderNotConfiguredError, PROVIDER_LABELS
from backend.app.services.jobs import QueueUnavailableError
from backend.app.services.parser import EmptyDocumentError, UnsupportedDocumentError
from backend.app.services.vector_store import EmbeddingDimensionError

from .apimonitor import monitor
from .Functions_module import setup_logger

logger = setup_logger()

# Probes and stats reads stay out of the request metrics they report on
UNMONITORED_PATHS = frozenset({"/health", "/monitor"})


def setup_middleware(app):

    @app.before_request
    async def before_request():
        g.start_time = time.time()

    @app.after_request
    async def after_request(response: Response):
        start_time = getattr(g, 'start_time', None)
        if start_time:
            duration_ms = (time.time() - start_time) * 1000
            status_code = response.status_code
            logger.info(f"{request.method} {request.path} {status_code} - {duration_ms:.2f}ms")
            if request.path in UNMONITORED_PATHS:
                return response
            monitor.record_request(
                request.path,
                latency_ms=duration_ms,
                success=status_code < 500,
                error=None if status_code < 500 else f"HTTP {status_code}",
            )
        return response

    @app.errorhandler(ValidationError)
    async def handle_validation_error(e: ValidationError):
        details = [
            {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
            for err in e.errors()
        ]
        return jsonify({"error": "invalid_request", "details": details}), 400

    @app.errorhandler(ProviderNotConfiguredError)
    async def handle_provider_not_configured(e: ProviderNotConfiguredError):
        logger.warning(str(e))
        return jsonify({"error": str(e)}), 503

    @app.errorhandler(ProviderError)
    async def handle_provider_error(e: ProviderError):
        if request.path == '/ai-generate-playwright':
            message = "Failed to generate Playwright code"
        else:
            message = f"Failed to generate test cases from {PROVIDER_LABELS.get(e.provider, e.provider)}"
        return jsonify({"error": message}), 500

    @app.errorhandler(UnsupportedDocumentError)
    async def handle_unsupported_document(e):
        return jsonify({"error": "unsupported_document", "details": str(e)}), 415

    @app.errorhandler(EmptyDocumentError)
    async def handle_empty_document(e):
        return jsonify({"error": "empty_document", "details": str(e)}), 400

    @app.errorhandler(EmbeddingDimensionError)
    async def handle_dimension_mismatch(e):
        logger.warning(str(e))
        return jsonify({"error": "embedding_dim_mismatch", "details": str(e)}), 409

    @app.errorhandler(QueueUnavailableError)
    async def handle_queue_unavailable(e):
        return jsonify({"error": "job queue unavailable", "details": str(e)}), 503

    @app.errorhandler(Exception)
    async def handle_exception(e):
        if isinstance(e, HTTPException):
            return e
        logger.error(f"Unhandled exception: {e}")
        logger.debug(traceback.format_exc())
        return jsonify({
            "error": "Internal Server Error",
            "details": str(e),
            "type": type(e).__name__,
        }), 500

    @app.errorhandler(404)
    async def not_found(e):
        return jsonify({"error": "Resource not found"}), 404

    @app.errorhandler(401)
    async def unauthorized(e):
        return jsonify({"error": "Unauthorized"}), 401

    @app.errorhandler(413)
    async def too_large(e):
        return jsonify({"error": "Upload too large"}), 413

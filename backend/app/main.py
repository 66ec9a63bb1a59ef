# Test Case Generator - Main Application
# Description: Quart backend proxying prompts to OpenAI/Gemini/Claude (optionally with RAG over
# uploaded documents) and queueing browser-driven signup jobs for synthetic test accounts

"""Quart-based backend for the test case generator.
- Test case generation through OpenAI, Gemini or Claude
- Gherkin scenario -> Playwright code conversion
- Upload, parse, chunk and index documents for RAG (Qdrant)
- Signup-agent job queue (rq/Redis) consumed by `backend.app.worker`
"""
import asyncio
import datetime
import time
from functools import wraps
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field
from quart import Quart, request, jsonify
from quart_cors import cors

from backend.app.config import settings
from backend.app.module.Functions_module import setup_logger
from backend.app.module.apimonitor import monitor
from backend.app.module.lifecycle import lifecycle
from backend.app.module.middleware import setup_middleware
from backend.app.services.ai import AIManager
from backend.app.services.jobs import signup_queue
from backend.app.services.parser import parse_content
from backend.app.services.vector_store import (
    DocumentStore, RetrievalService, embedding_adapter, embedding_service,
)

logger = setup_logger()

app = Quart(__name__)
app.config['MAX_CONTENT_LENGTH'] = settings.MAX_UPLOAD_BYTES
app = cors(app, allow_origin=settings.allowed_origins())

setup_middleware(app)


class GenerateRequest(BaseModel):
    input: Optional[str] = None
    use_rag: bool = Field(False, validation_alias=AliasChoices('use_rag', 'useRag'))
    top_k: Optional[int] = Field(None, ge=1, le=20, validation_alias=AliasChoices('top_k', 'topK'))


class PlaywrightRequest(BaseModel):
    scenario: Optional[str] = None
    use_rag: bool = Field(False, validation_alias=AliasChoices('use_rag', 'useRag'))


class UploadTextRequest(BaseModel):
    text: str = ""
    filename: Optional[str] = Field(None, max_length=255)


class SearchRequest(BaseModel):
    query: str = ""
    top_k: int = Field(5, ge=1, le=50)


class SignupJobRequest(BaseModel):
    count: Optional[int] = Field(None, validation_alias=AliasChoices('count', 'countToCreate'))
    # Interpolated into the target URL, keep to host-safe labels
    env: Optional[str] = Field(None, pattern=r'^[a-z0-9-]{1,32}$')
    region: Optional[str] = Field(None, pattern=r'^[a-z0-9-]{1,32}$')


class AuthManager:
    """Bearer-token guard for document mutations; open when no token is configured."""

    def __init__(self, settings) -> None:
        self.settings = settings

    def require_admin(self, f):
        @wraps(f)
        async def decorated_function(*args, **kwargs):
            token_expected = self.settings.admin_token
            if token_expected:
                auth = request.headers.get('Authorization', '')
                if not auth.startswith('Bearer ') or auth.split(' ', 1)[1].strip() != token_expected:
                    return jsonify({'error': 'unauthorized'}), 401
            return await f(*args, **kwargs)

        return decorated_function


auth_manager = AuthManager(settings)
document_store = DocumentStore(lifecycle, embedding_adapter, embedding_service)
retrieval_service = RetrievalService(document_store, settings)
ai_manager = AIManager(settings, retrieval_service)


async def _json_body() -> dict:
    payload = await request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


@app.route('/')
async def index():
    return 'Backend is running!'


@app.route('/health')
async def health():
    """Health check with component status and request metrics."""
    basic_health = {
        "status": "healthy",
        "demo": settings.demo,
        "timestamp": datetime.datetime.now().isoformat(),
        "components": {},
    }
    basic_health.update(monitor.get_health_summary())

    basic_health["components"]["qdrant"] = {
        "status": "healthy" if lifecycle.qdrant_client else "unavailable",
        "mode": "qdrant" if lifecycle.qdrant_client else "in-memory",
    }
    queue_ok = await asyncio.to_thread(signup_queue.ping)
    basic_health["components"]["queue"] = {
        "status": "healthy" if queue_ok else "unavailable",
        "name": settings.signup_queue,
    }
    basic_health["components"]["providers"] = ai_manager.provider_status()

    # Error-rate issues are informational; only component outages degrade
    if not queue_ok:
        basic_health["status"] = "degraded"

    status_code = 200 if basic_health["status"] == "healthy" else 503
    return jsonify(basic_health), status_code


@app.route('/monitor')
async def monitor_stats():
    return jsonify(monitor.get_stats())


async def _generate_for(provider: str):
    body = GenerateRequest.model_validate(await _json_body())
    text = (body.input or '').strip()
    if not text:
        return jsonify({'error': 'Input is required'}), 400
    if len(text) > settings.MAX_INPUT_CHARS:
        return jsonify({'error': f'Input exceeds {settings.MAX_INPUT_CHARS} characters'}), 400

    result = await ai_manager.generate_test_cases(provider, text, use_rag=body.use_rag, top_k=body.top_k)
    return jsonify({"output": result.output, "sources": result.sources})


@app.route('/generate-test-cases', methods=['POST'])
async def generate_openai():
    return await _generate_for('openai')


@app.route('/generate-gemini-test-cases', methods=['POST'])
async def generate_gemini():
    return await _generate_for('gemini')


@app.route('/generate-claude-test-cases', methods=['POST'])
async def generate_claude():
    return await _generate_for('claude')


@app.route('/ai-generate-playwright', methods=['POST'])
async def generate_playwright():
    body = PlaywrightRequest.model_validate(await _json_body())
    scenario = (body.scenario or '').strip()
    if not scenario:
        return jsonify({'error': 'Scenario is required'}), 400

    result = await ai_manager.generate_playwright_code(scenario, use_rag=body.use_rag)
    return jsonify({"code": result.output, "sources": result.sources})


@app.route('/upload', methods=['POST'])
@auth_manager.require_admin
async def upload_file():
    # Either a multipart file upload or JSON with 'text' and optional 'filename'
    files = await request.files
    if 'file' in files:
        file = files['file']
        content = await asyncio.to_thread(file.read)
        filename = file.filename or f"upload-{int(time.time())}.txt"
        text = await parse_content(filename, content)
    else:
        body = UploadTextRequest.model_validate(await _json_body())
        if not body.text.strip():
            return jsonify({"error": "file field or JSON text required"}), 400
        filename = body.filename or f"upload-{int(time.time())}.txt"
        text = body.text

    op_id = monitor.start_long_operation("index_document", filename)
    try:
        doc = await document_store.index_document(filename, text)
    except Exception as e:
        monitor.end_long_operation(op_id, success=False, error=str(e))
        raise
    monitor.end_long_operation(op_id)
    return jsonify({**doc, "status": "indexed" if document_store.is_available() else "stored (in-memory)"})


@app.route('/documents')
async def list_documents():
    return jsonify(await document_store.list_documents())


@app.route('/document/<doc_id>')
async def get_document(doc_id):
    doc = await document_store.get_document(doc_id)
    if doc is None:
        return jsonify({"error": "document not found"}), 404
    return jsonify(doc)


@app.route('/document/<doc_id>', methods=['DELETE'])
@auth_manager.require_admin
async def delete_document(doc_id):
    deleted = await document_store.delete_document(doc_id)
    if not deleted:
        return jsonify({"error": "document not found"}), 404
    return jsonify({"status": "deleted", "deleted": deleted})


@app.route('/reset', methods=['POST'])
@auth_manager.require_admin
async def reset_store():
    deleted = await document_store.clear()
    return jsonify({"status": "cleared", "deleted": deleted})


@app.route('/search', methods=['POST'])
async def search():
    body = SearchRequest.model_validate(await _json_body())
    query = body.query.strip()
    if not query:
        return jsonify({"error": "query is required"}), 400

    hits = await document_store.search(query, body.top_k)
    results = [{
        "doc_id": h["doc_id"],
        "filename": h["filename"],
        "chunk_text": h["text"][:400] + ('...' if len(h["text"]) > 400 else ''),
        "score": h["score"],
    } for h in hits]
    return jsonify({
        "results": results,
        "sources": sorted({h["filename"] for h in hits}),
    })


@app.route('/signup-agent', methods=['POST'])
async def enqueue_signup():
    body = SignupJobRequest.model_validate(await _json_body())
    count = 1 if body.count is None else body.count
    if not 1 <= count <= settings.SIGNUP_MAX_ACCOUNTS:
        return jsonify({
            "success": False,
            "error": f"count must be between 1 and {settings.SIGNUP_MAX_ACCOUNTS}",
        }), 400

    job = await asyncio.to_thread(signup_queue.enqueue, count, body.env, body.region)
    monitor.record_job_enqueued()
    return jsonify({
        "success": True,
        "jobId": job["jobId"],
        "status": job["status"],
        "countToCreate": count,
        "env": job["env"],
        "region": job["region"],
        "statusUrl": f"/signup-agent/{job['jobId']}",
    }), 202


@app.route('/signup-agent/<job_id>')
async def signup_status(job_id):
    job = await asyncio.to_thread(signup_queue.get_status, job_id)
    if job is None:
        return jsonify({"error": "job not found"}), 404
    return jsonify(job)


@app.before_serving
async def _on_startup():
    await lifecycle.startup()


@app.after_serving
async def _on_shutdown():
    await lifecycle.shutdown()


def run():
    app.run(host='0.0.0.0', port=settings.port)


if __name__ == '__main__':
    run()

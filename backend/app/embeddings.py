# Test Case Generator - Embeddings
# Description: Embedding providers for the document store (SentenceTransformers, FastEmbed, OpenAI)

"""Embedding providers abstraction.
Prefers `sentence-transformers`, falls back to FastEmbed and finally to a
deterministic hash embedding so indexing never hard-fails.
Provides async `embed_texts` which returns list[list[float]].
"""
import asyncio
import hashlib
import math
import os
from concurrent.futures import ProcessPoolExecutor
from typing import List

import numpy as np
from fastembed import TextEmbedding
from openai import AsyncOpenAI
from sentence_transformers import SentenceTransformer

from backend.app.config import settings
from backend.app.module.Functions_module import setup_logger

# Avoid tokenizers parallelism warning/deadlock when the process is forked
os.environ.setdefault('TOKENIZERS_PARALLELISM', 'false')

logger = setup_logger()

SENTENCE_MODEL_NAME = 'all-MiniLM-L6-v2'
BATCH_SIZE = 100

_ST_MODEL: SentenceTransformer | None = None
_FE_MODEL: TextEmbedding | None = None
# FastEmbed runs inside worker processes so a timed-out batch cannot pin the event loop
_FE_PROCESS_POOL: ProcessPoolExecutor | None = None
_FE_PROCESS_LOCAL_MODEL = None


async def _run_blocking(fn, *args, **kwargs):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: fn(*args, **kwargs))


async def preload_embedding_models():
    """Load the configured model ahead of the first upload."""
    global _ST_MODEL, _FE_MODEL
    provider = (settings.embedding_provider or '').lower()
    if settings.demo or provider == 'openai':
        return

    if provider in ('fastembed', 'fast', 'fe'):
        try:
            _FE_MODEL = await asyncio.wait_for(_run_blocking(TextEmbedding), timeout=settings.embedding_timeout)
            logger.info('Preloaded FastEmbed model')
        except (asyncio.TimeoutError, RuntimeError, OSError) as e:
            logger.warning('Failed to preload FastEmbed: {}', e)
        return

    try:
        _ST_MODEL = await _run_blocking(SentenceTransformer, SENTENCE_MODEL_NAME)
        await _run_blocking(_ST_MODEL.encode, ["warm up"])
        logger.info('Preloaded and warmed up SentenceTransformer model')
    except (RuntimeError, OSError, ValueError) as e:
        logger.warning('Failed to preload SentenceTransformer: {}', e)


def _fe_embed_process(batch: List[str]):
    """Executed inside a worker process; the model is created lazily per process."""
    global _FE_PROCESS_LOCAL_MODEL
    if _FE_PROCESS_LOCAL_MODEL is None:
        _FE_PROCESS_LOCAL_MODEL = TextEmbedding()
    return list(_FE_PROCESS_LOCAL_MODEL.embed(batch))


async def _run_in_fe_process(batch: List[str]) -> List[List[float]]:
    global _FE_PROCESS_POOL
    loop = asyncio.get_running_loop()
    if _FE_PROCESS_POOL is None:
        _FE_PROCESS_POOL = ProcessPoolExecutor(max_workers=min(4, (os.cpu_count() or 1)))
    raw_out = await loop.run_in_executor(_FE_PROCESS_POOL, _fe_embed_process, batch)
    return _normalize_vectors(raw_out)


async def shutdown_fe_executor():
    """Shutdown the FastEmbed process pool (called from lifecycle shutdown)."""
    global _FE_PROCESS_POOL
    if _FE_PROCESS_POOL:
        pool = _FE_PROCESS_POOL
        _FE_PROCESS_POOL = None
        await _run_blocking(pool.shutdown, False)


def _normalize_vectors(obj):
    """Normalize different vector types (numpy, list, dict wrappers, etc.) into list[list[float]]."""
    if isinstance(obj, dict):
        # common shapes: {'embeddings': [...]} or {'data': [{'embedding': [...]}, ...]}
        if isinstance(obj.get('embeddings'), (list, tuple)):
            obj = obj['embeddings']
        elif isinstance(obj.get('vectors'), (list, tuple)):
            obj = obj['vectors']
        elif isinstance(obj.get('data'), list):
            extracted = []
            for item in obj['data']:
                if isinstance(item, dict):
                    for key in ('embedding', 'embeddings', 'vector'):
                        if key in item:
                            extracted.append(item[key])
                            break
            if extracted:
                obj = extracted
        elif isinstance(obj.get('embedding'), (list, tuple)):
            obj = obj['embedding']

    if isinstance(obj, np.ndarray):
        if obj.ndim == 1:
            return [obj.astype(float).tolist()]
        return [row.astype(float).tolist() for row in obj]

    # Single 1D vector
    if isinstance(obj, (list, tuple)) and obj and all(isinstance(x, (int, float)) for x in obj):
        return [list(obj)]

    if isinstance(obj, list) and obj and all(isinstance(x, (list, tuple)) for x in obj):
        return [list(map(float, v)) for v in obj]

    try:
        return [list(map(float, row)) for row in obj]
    except (TypeError, ValueError):
        raise RuntimeError('Unable to normalize embedding output')


def hash_embed(text: str, dim: int | None = None) -> List[float]:
    """Deterministic unit vector derived from md5 digests of the text."""
    dim = dim or settings.embedding_dim
    h = hashlib.md5(text.encode('utf-8')).digest()
    vals: List[float] = []
    while len(vals) < dim:
        vals.extend(b / 255.0 for b in h)
        h = hashlib.md5(h).digest()
    vals = vals[:dim]
    norm = math.sqrt(sum(v * v for v in vals)) or 1.0
    return [v / norm for v in vals]


async def embed_texts_sentencetransformers(texts: List[str]) -> List[List[float]]:
    global _ST_MODEL
    if _ST_MODEL is None:
        _ST_MODEL = await _run_blocking(SentenceTransformer, SENTENCE_MODEL_NAME)
    all_vecs = []
    for i in range(0, len(texts), BATCH_SIZE):
        batch = texts[i:i + BATCH_SIZE]
        arr = await _run_blocking(_ST_MODEL.encode, batch, show_progress_bar=False, convert_to_numpy=True)
        all_vecs.extend(_normalize_vectors(arr))
    return all_vecs


async def embed_texts_fastembed(texts: List[str]) -> List[List[float]]:
    all_vecs = []
    for i in range(0, len(texts), BATCH_SIZE):
        batch = texts[i:i + BATCH_SIZE]
        try:
            vecs = await asyncio.wait_for(_run_in_fe_process(batch), timeout=settings.embedding_timeout)
        except asyncio.TimeoutError:
            logger.warning('FastEmbed batch embed timed out after {} seconds', settings.embedding_timeout)
            raise RuntimeError('FastEmbed embedding timed out')
        if not vecs:
            raise RuntimeError('FastEmbed returned empty embeddings for batch')
        all_vecs.extend(vecs)
    return all_vecs


async def embed_texts_openai(texts: List[str]) -> List[List[float]]:
    if not settings.openai_api_key:
        raise RuntimeError("OPENAI_API_KEY is not configured")
    client = AsyncOpenAI(api_key=settings.openai_api_key)
    resp = await client.embeddings.create(
        input=texts,
        model=settings.openai_embedding_model,
        dimensions=settings.embedding_dim,
    )
    return [d.embedding for d in resp.data]


async def _monitor_slow(task: asyncio.Task, provider: str, context: str | None, delay: int = 20):
    """Log when an embedding Task has been running longer than `delay` seconds."""
    try:
        await asyncio.sleep(delay)
        if not task.done():
            logger.warning("Embedding task running > {} seconds (provider={}, context={})", delay, provider, context or "<no-context>")
    except asyncio.CancelledError:
        return


async def embed_texts(texts: List[str], provider: str = 'sentence', context: str | None = None) -> List[List[float]]:
    """Main entrypoint for embeddings. `context` (e.g. filename) is only used in logs."""
    p = (provider or settings.embedding_provider or '').strip().lower()
    logger.info('Starting embed_texts provider={} count={} context={}', p, len(texts), context or '<none>')
    if not texts:
        return []

    async def _run_and_monitor(coro):
        task = asyncio.create_task(coro)
        watcher = asyncio.create_task(_monitor_slow(task, p, context, delay=max(20, settings.embedding_timeout)))
        try:
            return await task
        finally:
            if not watcher.done():
                watcher.cancel()

    if p in ('openai', 'openai_embeddings'):
        return await _run_and_monitor(embed_texts_openai(texts))

    if p in ('fastembed', 'fast', 'fe'):
        return await _run_and_monitor(embed_texts_fastembed(texts))

    try:
        return await _run_and_monitor(embed_texts_sentencetransformers(texts))
    except (RuntimeError, OSError, ValueError) as e:
        logger.exception('SentenceTransformers failed, trying FastEmbed: {}', e)

    try:
        return await _run_and_monitor(embed_texts_fastembed(texts))
    except (RuntimeError, OSError, ValueError) as e:
        logger.exception('FastEmbed fallback failed: {}', e)

    logger.warning('No embedding backend available; using deterministic fallback')
    return [hash_embed(t) for t in texts]

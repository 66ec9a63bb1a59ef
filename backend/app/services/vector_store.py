import asyncio
import datetime
import re
import uuid
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

from qdrant_client.http import models as qmodels

from backend.app import embeddings
from backend.app.config import settings
from backend.app.module.Functions_module import setup_logger

logger = setup_logger()

# In-memory store used when no Qdrant client is connected
DOCUMENTS: List[Dict[str, Any]] = []

SCROLL_BATCH = 256


class EmbeddingDimensionError(ValueError):
    """Collection vector size and embedding size disagree."""


class EmbeddingService:
    """Helper for deterministic embeddings and chunking logic."""

    def __init__(self, dim: Optional[int] = None):
        self.dim = dim or settings.embedding_dim

    def deterministic_embed(self, text: str) -> List[float]:
        return embeddings.hash_embed(text, self.dim)

    def cosine_sim(self, a: List[float], b: List[float]) -> float:
        # Vectors are unit length, the dot product is the cosine
        return sum(x * y for x, y in zip(a, b))

    async def chunk_text_async(self, text: str, chunk_size: Optional[int] = None, overlap: Optional[int] = None) -> List[str]:
        return await asyncio.to_thread(self.chunk_text, text, chunk_size, overlap)

    def chunk_text(self, text: str, chunk_size: Optional[int] = None, overlap: Optional[int] = None) -> List[str]:
        """Chunk text by sentences into ~chunk_size words, carrying whole
        sentences over until `overlap` words are repeated."""
        chunk_size = chunk_size or settings.CHUNK_SIZE
        overlap = settings.CHUNK_OVERLAP if overlap is None else overlap
        text = re.sub(r"\s+", " ", text or "").strip()
        if not text:
            return []
        sentences = re.split(r'(?<=[.!?])\s+', text)
        chunks = []
        current: List[str] = []
        current_words = 0
        for s in sentences:
            sw = len(s.split())
            if current_words + sw <= chunk_size or not current:
                current.append(s)
                current_words += sw
                continue
            chunks.append(' '.join(current))
            carry: List[str] = []
            carry_words = 0
            j = len(current) - 1
            while j >= 0 and carry_words < overlap:
                carry.insert(0, current[j])
                carry_words += len(current[j].split())
                j -= 1
            # Never carry the whole previous chunk, or chunking would not advance
            if len(carry) == len(current):
                carry = carry[1:]
            current = carry + [s]
            current_words = sum(len(x.split()) for x in current)
        if current:
            chunks.append(' '.join(current))
        return chunks


embedding_service = EmbeddingService()


class EmbeddingAdapter:
    """Produce embeddings: deterministic in demo mode, otherwise via `embeddings`."""

    def __init__(self, settings_obj, service: EmbeddingService):
        self.settings = settings_obj
        self.embedding_service = service

    async def embed_texts(self, texts: List[str], context: Optional[str] = None) -> List[List[float]]:
        if self.settings.demo:
            return await asyncio.to_thread(lambda: [self.embedding_service.deterministic_embed(t) for t in texts])
        try:
            return await embeddings.embed_texts(texts, provider=self.settings.embedding_provider, context=context)
        except Exception as e:
            logger.warning('EmbeddingAdapter falling back to deterministic embeddings: {}', e)
            return await asyncio.to_thread(lambda: [self.embedding_service.deterministic_embed(t) for t in texts])


embedding_adapter = EmbeddingAdapter(settings, embedding_service)


def _file_type(filename: str) -> str:
    return filename.rsplit('.', 1)[-1].upper() if '.' in filename else 'TXT'


def _doc_filter(doc_id: str) -> qmodels.Filter:
    return qmodels.Filter(must=[qmodels.FieldCondition(key="doc_id", match=qmodels.MatchValue(value=doc_id))])


class DocumentStore:
    """Document chunks and their metadata, kept in Qdrant point payloads.

    Falls back to the in-memory DOCUMENTS list when no client is connected.
    """

    def __init__(self, lifecycle_obj, adapter: EmbeddingAdapter, chunker: EmbeddingService):
        self.lifecycle = lifecycle_obj
        self.adapter = adapter
        self.chunker = chunker
        self.collection = settings.qdrant_collection

    @property
    def client(self):
        return self.lifecycle.qdrant_client

    def is_available(self) -> bool:
        return self.client is not None

    async def index_document(self, filename: str, text: str) -> Dict[str, Any]:
        chunks = await self.chunker.chunk_text_async(text)
        vectors = await self.adapter.embed_texts(chunks, context=filename)
        doc_id = str(uuid.uuid4())
        uploaded_at = datetime.datetime.now().strftime("%Y-%m-%d %H:%M")
        file_type = _file_type(filename)

        if not self.is_available():
            DOCUMENTS.append({
                "id": doc_id,
                "filename": filename,
                "text": text,
                "chunks": [{"text": c, "embed": v} for c, v in zip(chunks, vectors)],
                "uploaded_at": uploaded_at,
                "type": file_type,
            })
        else:
            await self._check_dimension(vectors)
            points = [
                qmodels.PointStruct(
                    id=str(uuid.uuid4()),
                    vector=list(vec),
                    payload={
                        "doc_id": doc_id,
                        "filename": filename,
                        "chunk_index": idx,
                        "text": chunk,
                        "uploaded_at": uploaded_at,
                        "type": file_type,
                    },
                )
                for idx, (chunk, vec) in enumerate(zip(chunks, vectors))
            ]
            logger.info('Upserting {} points for {} into {}', len(points), filename, self.collection)
            await asyncio.to_thread(self.client.upsert, collection_name=self.collection, points=points)

        return {"id": doc_id, "filename": filename, "chunks": len(chunks), "type": file_type, "uploaded_at": uploaded_at}

    async def _check_dimension(self, vectors: List[List[float]]) -> None:
        if not vectors:
            return
        info = await asyncio.to_thread(self.client.get_collection, self.collection)
        params = getattr(getattr(info, 'config', None), 'params', None)
        coll_dim = getattr(getattr(params, 'vectors', None), 'size', None)
        if coll_dim is not None and coll_dim != len(vectors[0]):
            raise EmbeddingDimensionError(
                f"Collection vectors are size {coll_dim} but embeddings are size {len(vectors[0])}; "
                "recreate the collection or set EMBEDDING_DIM to match."
            )

    async def _scroll(self, scroll_filter: Optional[qmodels.Filter] = None, with_payload=True):
        points = []
        offset = None
        while True:
            batch, offset = await asyncio.to_thread(
                self.client.scroll,
                collection_name=self.collection,
                scroll_filter=scroll_filter,
                limit=SCROLL_BATCH,
                offset=offset,
                with_payload=with_payload,
                with_vectors=False,
            )
            points.extend(batch)
            if offset is None or not batch:
                return points

    async def list_documents(self) -> List[Dict[str, Any]]:
        if not self.is_available():
            return [{
                "id": d["id"],
                "filename": d["filename"],
                "chunks": len(d["chunks"]),
                "uploaded_at": d["uploaded_at"],
                "type": d["type"],
            } for d in DOCUMENTS]

        docs: Dict[str, Dict[str, Any]] = {}
        for point in await self._scroll():
            payload = point.payload or {}
            doc_id = payload.get('doc_id') or payload.get('filename') or 'unknown'
            entry = docs.setdefault(doc_id, {
                "id": doc_id,
                "filename": payload.get('filename', 'unknown'),
                "chunks": 0,
                "uploaded_at": payload.get('uploaded_at', 'N/A'),
                "type": payload.get('type', 'FILE'),
            })
            entry["chunks"] += 1
        return list(docs.values())

    async def get_document(self, doc_id: str) -> Optional[Dict[str, Any]]:
        if not self.is_available():
            doc = next((d for d in DOCUMENTS if d["id"] == doc_id), None)
            if doc is None:
                return None
            return {"id": doc["id"], "filename": doc["filename"], "text": doc["text"], "chunks": len(doc["chunks"])}

        points = await self._scroll(_doc_filter(doc_id))
        if not points:
            return None
        payloads = sorted((p.payload or {} for p in points), key=lambda x: x.get('chunk_index', 0))
        return {
            "id": doc_id,
            "filename": payloads[0].get('filename', 'unknown'),
            "text": '\n'.join(p.get('text', '') for p in payloads),
            "chunks": len(payloads),
        }

    async def delete_document(self, doc_id: str) -> int:
        if not self.is_available():
            removed = [d for d in DOCUMENTS if d["id"] == doc_id]
            DOCUMENTS[:] = [d for d in DOCUMENTS if d["id"] != doc_id]
            return sum(len(d["chunks"]) for d in removed)

        points = await self._scroll(_doc_filter(doc_id), with_payload=False)
        if points:
            await asyncio.to_thread(
                self.client.delete,
                collection_name=self.collection,
                points_selector=qmodels.PointIdsList(points=[p.id for p in points]),
            )
        return len(points)

    async def clear(self) -> int:
        if not self.is_available():
            total = sum(len(d["chunks"]) for d in DOCUMENTS)
            DOCUMENTS.clear()
            return total

        points = await self._scroll(with_payload=False)
        ids = [p.id for p in points]
        for i in range(0, len(ids), SCROLL_BATCH):
            await asyncio.to_thread(
                self.client.delete,
                collection_name=self.collection,
                points_selector=qmodels.PointIdsList(points=ids[i:i + SCROLL_BATCH]),
            )
        return len(ids)

    async def search(self, query: str, top_k: int) -> List[Dict[str, Any]]:
        vectors = await self.adapter.embed_texts([query], context=f"search:{query[:80]}")
        if not vectors:
            return []
        q_vec = vectors[0]

        if not self.is_available():
            hits = []
            for d in DOCUMENTS:
                for idx, chunk in enumerate(d["chunks"]):
                    hits.append({
                        "doc_id": d["id"],
                        "filename": d["filename"],
                        "chunk_index": idx,
                        "text": chunk["text"],
                        "score": float(self.chunker.cosine_sim(q_vec, chunk["embed"])),
                    })
            hits.sort(key=lambda h: h["score"], reverse=True)
            return hits[:top_k]

        res = await asyncio.to_thread(
            self.client.query_points,
            collection_name=self.collection,
            query=q_vec,
            limit=top_k,
            with_payload=True,
        )
        hits = []
        for point in res.points:
            payload = point.payload or {}
            hits.append({
                "doc_id": payload.get('doc_id'),
                "filename": payload.get('filename', 'unknown'),
                "chunk_index": payload.get('chunk_index', 0),
                "text": payload.get('text', ''),
                "score": float(point.score or 0.0),
            })
        return hits


@dataclass
class RetrievedContext:
    context: str = ""
    sources: List[Dict[str, Any]] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.context)


class RetrievalService:
    """RAG lookup: turns a prompt into a context block from the document store."""

    def __init__(self, store: DocumentStore, settings_obj):
        self.store = store
        self.settings = settings_obj

    async def retrieve(self, query: str, top_k: Optional[int] = None) -> RetrievedContext:
        top_k = top_k or self.settings.TOP_K_RESULTS
        hits = await self.store.search(query, top_k)
        threshold = self.settings.SIMILARITY_THRESHOLD
        relevant = [h for h in hits if h["score"] > threshold]
        if not relevant:
            logger.info('RAG lookup found no chunks above {:.2f} for query={!r}', threshold, query[:80])
            return RetrievedContext()

        context = "\n\n".join(f"Source ({h['filename']}): {h['text']}" for h in relevant)
        max_chars = self.settings.MAX_CONTEXT_CHARS
        if len(context) > max_chars:
            context = context[:max_chars] + "\n\n...[Truncated context]..."

        sources: Dict[str, Dict[str, Any]] = {}
        for h in relevant:
            best = sources.get(h["doc_id"])
            if best is None or h["score"] > best["score"]:
                sources[h["doc_id"]] = {"doc_id": h["doc_id"], "filename": h["filename"], "score": round(h["score"], 3)}
        return RetrievedContext(context=context, sources=list(sources.values()))

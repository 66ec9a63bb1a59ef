import sys
import os
from types import SimpleNamespace
from unittest.mock import MagicMock
import pytest
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from backend.app.services import vector_store
from backend.app.services.vector_store import (
    DocumentStore, EmbeddingAdapter, EmbeddingDimensionError, EmbeddingService, RetrievalService,
)

DIM = 16


@pytest.fixture
def chunker():
    return EmbeddingService(dim=DIM)


@pytest.fixture
def adapter(chunker):
    return EmbeddingAdapter(SimpleNamespace(demo=True, embedding_provider='sentence'), chunker)


@pytest.fixture
def memory_store(adapter, chunker):
    vector_store.DOCUMENTS.clear()
    yield DocumentStore(SimpleNamespace(qdrant_client=None), adapter, chunker)
    vector_store.DOCUMENTS.clear()


def _collection_info(size):
    return SimpleNamespace(config=SimpleNamespace(params=SimpleNamespace(vectors=SimpleNamespace(size=size))))


def test_chunk_text_carries_overlap(chunker):
    text = 'One two three. Four five six. Seven eight nine.'
    chunks = chunker.chunk_text(text, chunk_size=6, overlap=3)
    assert chunks == ['One two three. Four five six.', 'Four five six. Seven eight nine.']


def test_chunk_text_always_advances(chunker):
    text = 'One two three. Four five six. Seven eight nine.'
    chunks = chunker.chunk_text(text, chunk_size=3, overlap=10)
    assert chunks == ['One two three.', 'Four five six.', 'Seven eight nine.']


def test_chunk_text_empty(chunker):
    assert chunker.chunk_text('   \n\t ') == []


@pytest.mark.asyncio
async def test_adapter_falls_back_when_provider_fails(monkeypatch, chunker):
    async def broken(texts, provider='sentence', context=None):
        raise RuntimeError('provider down')

    monkeypatch.setattr(vector_store.embeddings, 'embed_texts', broken)
    adapter = EmbeddingAdapter(SimpleNamespace(demo=False, embedding_provider='openai'), chunker)
    vecs = await adapter.embed_texts(['hello'])
    assert vecs == [chunker.deterministic_embed('hello')]


@pytest.mark.asyncio
async def test_memory_store_roundtrip(memory_store):
    doc = await memory_store.index_document('rules.txt', 'Passwords need 12 characters. Usernames are unique.')
    assert doc['chunks'] == 1
    assert doc['type'] == 'TXT'

    listing = await memory_store.list_documents()
    assert [d['id'] for d in listing] == [doc['id']]

    fetched = await memory_store.get_document(doc['id'])
    assert fetched['filename'] == 'rules.txt'
    assert await memory_store.get_document('missing') is None

    hits = await memory_store.search('password length', top_k=5)
    assert hits[0]['doc_id'] == doc['id']
    assert hits[0]['chunk_index'] == 0

    assert await memory_store.delete_document(doc['id']) == 1
    assert await memory_store.list_documents() == []


@pytest.mark.asyncio
async def test_memory_store_clear(memory_store):
    await memory_store.index_document('a.txt', 'first doc')
    await memory_store.index_document('b.md', 'second doc')
    assert await memory_store.clear() == 2
    assert vector_store.DOCUMENTS == []


@pytest.mark.asyncio
async def test_qdrant_index_writes_payload_metadata(adapter, chunker):
    client = MagicMock()
    client.get_collection.return_value = _collection_info(DIM)
    store = DocumentStore(SimpleNamespace(qdrant_client=client), adapter, chunker)

    doc = await store.index_document('story.md', 'As a shopper I can pay by card.')

    kwargs = client.upsert.call_args.kwargs
    assert kwargs['collection_name'] == store.collection
    payload = kwargs['points'][0].payload
    assert payload['doc_id'] == doc['id']
    assert payload['filename'] == 'story.md'
    assert payload['chunk_index'] == 0
    assert payload['type'] == 'MD'


@pytest.mark.asyncio
async def test_qdrant_dimension_mismatch(adapter, chunker):
    client = MagicMock()
    client.get_collection.return_value = _collection_info(DIM * 2)
    store = DocumentStore(SimpleNamespace(qdrant_client=client), adapter, chunker)

    with pytest.raises(EmbeddingDimensionError):
        await store.index_document('story.md', 'Some text.')
    client.upsert.assert_not_called()


@pytest.mark.asyncio
async def test_qdrant_list_and_get_group_points(adapter, chunker):
    client = MagicMock()
    client.scroll.return_value = ([
        SimpleNamespace(id='p2', payload={'doc_id': 'd1', 'filename': 'a.txt', 'chunk_index': 1, 'text': 'second'}),
        SimpleNamespace(id='p1', payload={'doc_id': 'd1', 'filename': 'a.txt', 'chunk_index': 0, 'text': 'first'}),
    ], None)
    store = DocumentStore(SimpleNamespace(qdrant_client=client), adapter, chunker)

    listing = await store.list_documents()
    assert listing == [{'id': 'd1', 'filename': 'a.txt', 'chunks': 2, 'uploaded_at': 'N/A', 'type': 'FILE'}]

    doc = await store.get_document('d1')
    assert doc['text'] == 'first\nsecond'

    assert await store.delete_document('d1') == 2
    selector = client.delete.call_args.kwargs['points_selector']
    assert selector.points == ['p2', 'p1']


@pytest.mark.asyncio
async def test_qdrant_search_maps_points(adapter, chunker):
    client = MagicMock()
    client.query_points.return_value = SimpleNamespace(points=[
        SimpleNamespace(payload={'doc_id': 'd1', 'filename': 'a.txt', 'chunk_index': 3, 'text': 'hit'}, score=0.91),
    ])
    store = DocumentStore(SimpleNamespace(qdrant_client=client), adapter, chunker)

    hits = await store.search('query', top_k=2)
    assert hits == [{'doc_id': 'd1', 'filename': 'a.txt', 'chunk_index': 3, 'text': 'hit', 'score': 0.91}]
    assert client.query_points.call_args.kwargs['limit'] == 2


class FakeStore:
    def __init__(self, hits):
        self.hits = hits
        self.calls = []

    async def search(self, query, top_k):
        self.calls.append((query, top_k))
        return self.hits


def _settings(**overrides):
    values = dict(TOP_K_RESULTS=5, SIMILARITY_THRESHOLD=0.2, MAX_CONTEXT_CHARS=6000)
    values.update(overrides)
    return SimpleNamespace(**values)


def _hit(doc_id, filename, text, score):
    return {'doc_id': doc_id, 'filename': filename, 'chunk_index': 0, 'text': text, 'score': score}


@pytest.mark.asyncio
async def test_retrieval_below_threshold_is_empty():
    store = FakeStore([_hit('d1', 'a.txt', 'irrelevant', 0.1)])
    retrieved = await RetrievalService(store, _settings()).retrieve('anything')
    assert not retrieved
    assert retrieved.sources == []
    assert store.calls == [('anything', 5)]


@pytest.mark.asyncio
async def test_retrieval_builds_context_and_dedupes_sources():
    store = FakeStore([
        _hit('d1', 'a.txt', 'alpha', 0.5),
        _hit('d1', 'a.txt', 'beta', 0.8),
        _hit('d2', 'b.txt', 'gamma', 0.3),
    ])
    retrieved = await RetrievalService(store, _settings()).retrieve('q', top_k=3)
    assert retrieved.context == 'Source (a.txt): alpha\n\nSource (a.txt): beta\n\nSource (b.txt): gamma'
    assert retrieved.sources == [
        {'doc_id': 'd1', 'filename': 'a.txt', 'score': 0.8},
        {'doc_id': 'd2', 'filename': 'b.txt', 'score': 0.3},
    ]
    assert store.calls == [('q', 3)]


@pytest.mark.asyncio
async def test_retrieval_truncates_context():
    store = FakeStore([_hit('d1', 'a.txt', 'x' * 100, 0.9)])
    retrieved = await RetrievalService(store, _settings(MAX_CONTEXT_CHARS=20)).retrieve('q')
    assert retrieved.context.startswith('Source (a.txt): xxx')
    assert retrieved.context.endswith('...[Truncated context]...')

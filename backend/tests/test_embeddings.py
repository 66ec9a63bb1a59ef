import sys
import os
import math
import numpy as np
import pytest
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from backend.app import embeddings


def test_normalize_list_of_vectors():
    out = [[0.1, 0.2], [0.3, 0.4]]
    res = embeddings._normalize_vectors(out)
    assert isinstance(res, list)
    assert len(res) == 2


def test_normalize_single_vector():
    out = [0.1, 0.2, 0.3]
    res = embeddings._normalize_vectors(out)
    assert res == [[0.1, 0.2, 0.3]]


def test_normalize_numpy_matrix():
    res = embeddings._normalize_vectors(np.array([[1, 2], [3, 4]], dtype=np.float32))
    assert res == [[1.0, 2.0], [3.0, 4.0]]


def test_normalize_data_items():
    out = {'data': [{'embedding': [0.1, 0.2]}, {'embedding': [0.3, 0.4]}], 'other': 'meta'}
    res = embeddings._normalize_vectors(out)
    assert res == [[0.1, 0.2], [0.3, 0.4]]


def test_normalize_rejects_garbage():
    with pytest.raises(RuntimeError):
        embeddings._normalize_vectors(42)


def test_hash_embed_is_deterministic_unit_vector():
    a = embeddings.hash_embed('login page', 64)
    b = embeddings.hash_embed('login page', 64)
    c = embeddings.hash_embed('checkout page', 64)
    assert a == b
    assert a != c
    assert len(a) == 64
    assert math.isclose(sum(v * v for v in a), 1.0, rel_tol=1e-9)


@pytest.mark.asyncio
async def test_embed_texts_falls_back_to_hash(monkeypatch):
    async def broken(texts):
        raise RuntimeError('no model')

    monkeypatch.setattr(embeddings, 'embed_texts_sentencetransformers', broken)
    monkeypatch.setattr(embeddings, 'embed_texts_fastembed', broken)
    res = await embeddings.embed_texts(['a', 'b'], provider='sentence')
    assert res == [embeddings.hash_embed('a'), embeddings.hash_embed('b')]


@pytest.mark.asyncio
async def test_embed_texts_empty():
    assert await embeddings.embed_texts([], provider='sentence') == []

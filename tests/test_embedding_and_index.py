import json
import os

import numpy as np
import pytest

from kbchat.errors import CorpusNotFound, CorpusStateInconsistent, DimensionMismatch
from kbchat.memory.embedding_model import Embedder
from kbchat.memory.vector_index import VectorIndex

from .conftest import DIM, FakeEncoder


def test_embed_returns_normalized_vector(embedder):
    vec = embedder.embed("sales pipeline review")

    assert vec.shape == (DIM,)
    assert vec.dtype == np.float32
    assert np.linalg.norm(vec) == pytest.approx(1.0, abs=1e-5)


def test_embed_is_deterministic(embedder):
    assert np.allclose(embedder.embed("hiring plan"), embedder.embed("hiring plan"))


def test_embed_rejects_empty_text(embedder):
    with pytest.raises(ValueError):
        embedder.embed("   ")


def test_embed_dimension_mismatch():
    embedder = Embedder("fake-model", DIM + 1, model=FakeEncoder(DIM))
    with pytest.raises(DimensionMismatch) as info:
        embedder.embed("text")
    assert info.value.expected == DIM + 1
    assert info.value.actual == DIM


def test_model_loaded_once(monkeypatch):
    loads = []

    def fake_loader(name):
        loads.append(name)
        return FakeEncoder()

    monkeypatch.setattr("kbchat.memory.embedding_model.load_sentence_transformer", fake_loader)
    embedder = Embedder("lazy-model", DIM)

    assert not embedder.loaded
    embedder.embed("one")
    embedder.embed("two")
    assert loads == ["lazy-model"]


def test_nearest_neighbor_is_self(embedder, populated_index):
    text, _ = populated_index.entry(2)
    hits = populated_index.search(embedder.embed(text), 1)

    assert hits[0][0] == 2
    assert hits[0][1] == pytest.approx(0.0, abs=1e-3)


def test_search_orders_by_distance(embedder, populated_index):
    hits = populated_index.search(embedder.embed("sales pipeline"), 3)
    distances = [d for _, d in hits]
    assert distances == sorted(distances)


def test_search_k_larger_than_index(embedder, populated_index):
    hits = populated_index.search(embedder.embed("anything"), 50)
    assert sorted(i for i, _ in hits) == [0, 1, 2, 3]


def test_search_empty_index(embedder):
    assert VectorIndex(DIM).search(embedder.embed("question"), 3) == []


def test_add_rejects_wrong_dimension():
    index = VectorIndex(DIM)
    with pytest.raises(DimensionMismatch):
        index.add(np.ones(DIM + 2, dtype="float32"), "text", {})
    assert len(index) == 0
    assert index.metadata == []
    assert index.texts == []


def test_save_and_load_round_trip(tmp_path, embedder, populated_index):
    index_path = str(tmp_path / "vector-db" / "knowledge.index")
    meta_path = str(tmp_path / "chunks-metadata.json")

    populated_index.save(index_path, meta_path)
    loaded = VectorIndex.load(index_path, meta_path, DIM)

    assert len(loaded) == len(populated_index)
    assert loaded.texts == populated_index.texts
    assert loaded.metadata == populated_index.metadata

    query = embedder.embed("value based pricing")
    original = populated_index.search(query, 2)
    reloaded = loaded.search(query, 2)
    assert [i for i, _ in reloaded] == [i for i, _ in original]
    assert [d for _, d in reloaded] == pytest.approx([d for _, d in original])

    with open(meta_path, encoding="utf-8") as f:
        data = json.load(f)
    assert set(data) == {"metadata", "texts", "ntotal", "index_sha256"}
    assert data["ntotal"] == len(populated_index)
    assert not os.path.exists(index_path + ".tmp")


def test_save_twice_is_idempotent(tmp_path, populated_index):
    index_path = str(tmp_path / "knowledge.index")
    meta_path = str(tmp_path / "chunks-metadata.json")

    populated_index.save(index_path, meta_path)
    with open(meta_path, "rb") as f:
        first = f.read()
    populated_index.save(index_path, meta_path)
    with open(meta_path, "rb") as f:
        second = f.read()

    assert first == second
    assert len(VectorIndex.load(index_path, meta_path)) == len(populated_index)


def test_load_missing_corpus(tmp_path):
    with pytest.raises(CorpusNotFound):
        VectorIndex.load(str(tmp_path / "knowledge.index"), str(tmp_path / "meta.json"))


def test_load_index_without_metadata(tmp_path, populated_index):
    index_path = str(tmp_path / "knowledge.index")
    meta_path = str(tmp_path / "meta.json")
    populated_index.save(index_path, meta_path)
    os.remove(meta_path)

    with pytest.raises(CorpusStateInconsistent):
        VectorIndex.load(index_path, meta_path)


def test_load_metadata_without_index(tmp_path):
    meta_path = tmp_path / "meta.json"
    meta_path.write_text(json.dumps({"metadata": [], "texts": []}), encoding="utf-8")

    with pytest.raises(CorpusStateInconsistent):
        VectorIndex.load(str(tmp_path / "knowledge.index"), str(meta_path))


def test_load_count_mismatch(tmp_path, populated_index):
    index_path = str(tmp_path / "knowledge.index")
    meta_path = tmp_path / "meta.json"
    populated_index.save(index_path, str(meta_path))

    data = json.loads(meta_path.read_text(encoding="utf-8"))
    data["texts"].pop()
    data["metadata"].pop()
    meta_path.write_text(json.dumps(data), encoding="utf-8")

    with pytest.raises(CorpusStateInconsistent):
        VectorIndex.load(index_path, str(meta_path))


def test_load_dimension_mismatch(tmp_path, populated_index):
    index_path = str(tmp_path / "knowledge.index")
    meta_path = str(tmp_path / "meta.json")
    populated_index.save(index_path, meta_path)

    with pytest.raises(CorpusStateInconsistent):
        VectorIndex.load(index_path, meta_path, DIM * 2)


def test_load_malformed_metadata(tmp_path, populated_index):
    index_path = str(tmp_path / "knowledge.index")
    meta_path = tmp_path / "meta.json"
    populated_index.save(index_path, str(meta_path))
    meta_path.write_text("{not json", encoding="utf-8")

    with pytest.raises(CorpusStateInconsistent):
        VectorIndex.load(index_path, str(meta_path))


def test_load_corrupt_index_file(tmp_path, populated_index):
    index_path = tmp_path / "knowledge.index"
    meta_path = str(tmp_path / "meta.json")
    populated_index.save(str(index_path), meta_path)
    index_path.write_bytes(b"not a faiss index")

    with pytest.raises(CorpusStateInconsistent):
        VectorIndex.load(str(index_path), meta_path)


def test_interrupted_save_is_refused_on_load(tmp_path, monkeypatch, embedder, populated_index):
    index_path = str(tmp_path / "knowledge.index")
    meta_path = str(tmp_path / "meta.json")
    populated_index.save(index_path, meta_path)

    replacement = VectorIndex(DIM)
    for i, text in enumerate(["alpha beta", "gamma delta", "epsilon zeta", "eta theta"]):
        replacement.add(embedder.embed(text), text, {"section": f"S{i}"})
    assert len(replacement) == len(populated_index)

    real_replace = os.replace
    calls = []

    def failing_second_replace(src, dst):
        calls.append(dst)
        if len(calls) == 2:
            raise OSError("disk full")
        real_replace(src, dst)

    monkeypatch.setattr(os, "replace", failing_second_replace)
    with pytest.raises(OSError):
        replacement.save(index_path, meta_path)
    monkeypatch.setattr(os, "replace", real_replace)

    with pytest.raises(CorpusStateInconsistent):
        VectorIndex.load(index_path, meta_path, DIM)


def test_metadata_without_digest_still_loads(tmp_path, populated_index):
    index_path = str(tmp_path / "knowledge.index")
    meta_path = tmp_path / "meta.json"
    populated_index.save(index_path, str(meta_path))

    data = json.loads(meta_path.read_text(encoding="utf-8"))
    meta_path.write_text(json.dumps({"metadata": data["metadata"], "texts": data["texts"]}), encoding="utf-8")

    assert len(VectorIndex.load(index_path, str(meta_path), DIM)) == len(populated_index)


def test_metadata_with_invalid_utf8(tmp_path, populated_index):
    index_path = str(tmp_path / "knowledge.index")
    meta_path = tmp_path / "meta.json"
    populated_index.save(index_path, str(meta_path))
    meta_path.write_bytes(b"\xff\xfe{}")

    with pytest.raises(CorpusStateInconsistent):
        VectorIndex.load(index_path, str(meta_path))


@pytest.mark.parametrize(
    "field,bad_entry",
    [("metadata", "not an object"), ("metadata", None), ("texts", 42), ("texts", {"text": "x"})],
)
def test_metadata_with_wrong_entry_types(tmp_path, populated_index, field, bad_entry):
    index_path = str(tmp_path / "knowledge.index")
    meta_path = tmp_path / "meta.json"
    populated_index.save(index_path, str(meta_path))

    data = json.loads(meta_path.read_text(encoding="utf-8"))
    data[field][0] = bad_entry
    meta_path.write_text(json.dumps(data), encoding="utf-8")

    with pytest.raises(CorpusStateInconsistent):
        VectorIndex.load(index_path, str(meta_path))

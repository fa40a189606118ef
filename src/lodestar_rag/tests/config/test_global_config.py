import logging
from pathlib import Path

import pytest

from lodestar_rag.config import GlobalConfig, configure_logging

EXAMPLE_CONFIG = Path(__file__).resolve().parents[4] / "config" / "config.example.yaml"


def _write(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_load_expands_environment_variables(tmp_path, monkeypatch):
    monkeypatch.setenv("LODESTAR_TEST_KEY", "sk-from-env")
    path = _write(
        tmp_path,
        "embedder:\n"
        "  type: dashscope\n"
        "  api_key: ${LODESTAR_TEST_KEY}\n"
        "vector_store:\n"
        "  location: ':memory:'\n"
        "  headers: [\"${LODESTAR_TEST_KEY}\"]\n",
    )

    cfg = GlobalConfig.load(path)

    assert cfg.embedder["api_key"] == "sk-from-env"
    assert cfg.vector_store["headers"] == ["sk-from-env"]
    assert cfg.config_path == path.resolve()


def test_optional_sections_default_to_empty(tmp_path):
    cfg = GlobalConfig.load(_write(tmp_path, "embedder: {type: mock}\nvector_store: {}\n"))

    assert cfg.splitter == {}
    assert cfg.indexer == {}
    assert cfg.retrieval == {}
    assert cfg.chunk_store == {}
    assert cfg.logging == {}


def test_missing_required_section():
    cfg = GlobalConfig({"vector_store": {}})

    with pytest.raises(KeyError):
        cfg.embedder


def test_root_must_be_mapping():
    with pytest.raises(TypeError):
        GlobalConfig(["not", "a", "mapping"])


def test_chunk_store_path_resolved_relative_to_config(tmp_path):
    path = _write(tmp_path, "chunk_store:\n  persist_path: data/chunks.json\n")

    cfg = GlobalConfig.load(path)

    assert cfg.chunk_store["persist_path"] == str(tmp_path.resolve() / "data" / "chunks.json")


@pytest.mark.parametrize(
    "section, exc",
    [
        ({"chunk_size": 100, "overlap": 100}, ValueError),
        ({"chunk_size": 50}, ValueError),
        ({"overlap": -1}, ValueError),
        ({"chunk_size": "800"}, TypeError),
        ({"max_chunks": 0}, ValueError),
    ],
)
def test_invalid_splitter_section(section, exc):
    with pytest.raises(exc):
        GlobalConfig({"splitter": section}).splitter


def test_invalid_vector_store_metric():
    with pytest.raises(ValueError):
        GlobalConfig({"vector_store": {"metric": "manhattan"}}).vector_store


def test_invalid_vector_store_dimension():
    with pytest.raises(ValueError):
        GlobalConfig({"vector_store": {"dimension": 0}}).vector_store


@pytest.mark.parametrize("key", ["worker_id", "datacenter_id"])
def test_indexer_snowflake_ids_in_range(key):
    with pytest.raises(ValueError):
        GlobalConfig({"indexer": {key: 32}}).indexer


def test_invalid_retrieval_top_k():
    with pytest.raises(ValueError):
        GlobalConfig({"retrieval": {"top_k": 0}}).retrieval


def test_example_config_is_valid(monkeypatch):
    monkeypatch.setenv("DASHSCOPE_API_KEY", "sk-example")

    cfg = GlobalConfig.load(EXAMPLE_CONFIG)

    assert cfg.embedder["api_key"] == "sk-example"
    assert cfg.vector_store["dimension"] == cfg.embedder["dimension"]
    assert cfg.splitter["chunk_size"] > cfg.splitter["overlap"]
    assert cfg.retrieval["top_k"] == 5


def test_configure_logging_applies_level(monkeypatch):
    calls = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))

    configure_logging({"level": "debug"})

    assert calls[0]["level"] == logging.DEBUG
    assert "%(name)s" in calls[0]["format"]

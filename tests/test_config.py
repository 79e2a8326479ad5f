"""Tests for Config loading/saving and the persisted stores."""
import json

from memoria.chunkstore import ChunkStore
from memoria.config import Config
from memoria.documents import Chunk, DocumentKind
from memoria.metadata import MetadataStore, is_error_marker
from memoria.providers import ProviderKind

from conftest import fake_model


class TestConfig:
    def test_defaults(self):
        cfg = Config()
        assert cfg.chunk_max_chars == 1500
        assert cfg.chunk_target_chars == 500
        assert cfg.chunk_min_chars == 50
        assert cfg.chunk_overlap == 50
        assert cfg.bm25_k1 == 1.2
        assert cfg.bm25_b == 0.75
        assert cfg.lexical_weight == 0.5
        assert cfg.score_normalization == "minmax"

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("MEMORIA_LEXICAL_WEIGHT", "0.7")
        assert Config().lexical_weight == 0.7

    def test_save_and_load(self, tmp_path):
        cfg = Config(data_path=str(tmp_path))
        cfg.semantic_threshold = 0.25
        cfg.save()
        loaded = Config.load(data_path=str(tmp_path))
        assert loaded.semantic_threshold == 0.25

    def test_load_keeps_explicit_overrides(self, tmp_path):
        (tmp_path / "config.json").write_text(json.dumps({"data_path": "/elsewhere", "web_port": 9999}))
        loaded = Config.load(data_path=str(tmp_path))
        assert loaded.data_path == str(tmp_path)
        assert loaded.web_port == 9999

    def test_safe_dict_masks_key(self):
        cfg = Config(embedding_api_key="sk-abcdefghijklmnop")
        assert cfg.to_safe_dict()["embedding_api_key"] == "sk-abcde..."

    def test_default_model(self):
        model = Config(embedding_provider_kind="local_server", embedding_provider_name="ollama",
                       embedding_model="nomic-embed-text").default_embedding_model()
        assert model.kind == ProviderKind.LOCAL_SERVER
        assert model.model == "nomic-embed-text"
        assert Config(embedding_model="").default_embedding_model() is None

    def test_vectorstore_dir_derived(self, tmp_path):
        assert Config(data_path=str(tmp_path)).vectorstore_dir == tmp_path / "vectorstore"


class TestChunkStore:
    def _chunk(self, cid, parent, kind=DocumentKind.NOTE):
        return Chunk(id=cid, parent_id=parent, kind=kind, content=f"content {cid}")

    def test_replace_and_persist(self, tmp_path):
        store = ChunkStore(tmp_path / "chunks.json")
        store.replace_parent("p", [self._chunk("notechunk_p_0", "p"), self._chunk("notechunk_p_1", "p")])
        old = store.replace_parent("p", [self._chunk("notechunk_p_0", "p")])
        assert [c.id for c in old] == ["notechunk_p_0", "notechunk_p_1"]
        reopened = ChunkStore(tmp_path / "chunks.json")
        assert reopened.ids_for_parent("p") == ["notechunk_p_0"]
        assert reopened.get("notechunk_p_0").content == "content notechunk_p_0"

    def test_clear_by_kind(self):
        store = ChunkStore()
        store.replace_parent("n", [self._chunk("notechunk_n_0", "n")])
        store.replace_parent("c", [self._chunk("chatchunk_c_0_0_user", "c", DocumentKind.CHAT)])
        assert store.clear(DocumentKind.NOTE) == ["notechunk_n_0"]
        assert store.parent_ids() == ["c"]


class TestMetadataStore:
    def test_mark_and_persist(self, tmp_path):
        store = MetadataStore(tmp_path / "meta.json", default_model=fake_model())
        store.mark("bm25_last_rebuild", "2026-01-01T00:00:00+00:00")
        store.mark_error("embeddings_last_update", "provider down")
        reopened = MetadataStore(tmp_path / "meta.json")
        meta = reopened.metadata
        assert meta.bm25_last_rebuild == "2026-01-01T00:00:00+00:00"
        assert is_error_marker(meta.embeddings_last_update)
        assert meta.embeddings_last_update == "error: provider down"

    def test_stored_model_wins_over_default(self, tmp_path):
        store = MetadataStore(tmp_path / "meta.json", default_model=fake_model("v1"))
        store.set_active_model(fake_model("v2"))
        reopened = MetadataStore(tmp_path / "meta.json", default_model=fake_model("v1"))
        assert reopened.active_model.model == "v2"

    def test_safe_dict_masks_credential(self):
        store = MetadataStore(default_model=fake_model().model_copy(update={"api_key": "secret"}))
        assert store.metadata.to_safe_dict()["embedding_model"]["api_key"] != "secret"

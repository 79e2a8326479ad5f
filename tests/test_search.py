"""Tests for hybrid scoring, normalization and LLM context formatting."""
import pytest

from memoria.chunkstore import ChunkStore
from memoria.config import Config
from memoria.documents import Chunk, DocumentKind, Note
from memoria.lexical import LexicalIndex
from memoria.search import (
    HybridQueryEngine, HybridRankedChunk, format_results_for_llm, normalize_minmax,
    normalize_rank,
)


class _FixedVectors:
    """Vector store stand-in returning preset cosine scores."""

    def __init__(self, scores: dict[str, float]):
        self.scores = scores

    @property
    def count(self) -> int:
        return len(self.scores)

    def vectorized_ids(self) -> set[str]:
        return set(self.scores)

    def similarity(self, query_vector, top_k=None) -> dict[str, float]:
        return dict(self.scores)


class TestNormalization:
    def test_minmax_range(self):
        norm = normalize_minmax({"a": 2.0, "b": 4.0, "c": 6.0})
        assert norm == {"a": 0.0, "b": 0.5, "c": 1.0}

    def test_minmax_single_positive(self):
        assert normalize_minmax({"a": 3.2}) == {"a": 1.0}

    def test_minmax_all_zero(self):
        assert normalize_minmax({"a": 0.0, "b": 0.0}) == {"a": 0.0, "b": 0.0}

    def test_minmax_empty(self):
        assert normalize_minmax({}) == {}

    def test_rank(self):
        norm = normalize_rank({"a": 9.0, "b": 5.0, "c": 5.0, "d": 1.0})
        assert norm["a"] == 1.0
        assert norm["b"] == norm["c"] == 0.75
        assert norm["d"] == 0.25


class TestHybridSearch:
    def test_paris_example(self, engine):
        engine.on_document_saved(Note(id="geo", title="Geography", content="Paris is the capital of France"))
        engine.on_document_saved(Note(id="bake", title="Baking", content="Sourdough needs a mature starter"))
        engine.flush(5)
        results = engine.query_engine.search("capital of France", 5)
        assert results[0].chunk_id == "notechunk_geo_0"
        assert results[0].lexical_score > 0
        assert results[0].semantic_score > 0
        assert results[0].parent_title == "Geography"

    def test_empty_query_makes_no_provider_call(self, engine, backend):
        engine.on_document_saved(Note(id="n", content="some content"))
        engine.flush(5)
        backend.calls.clear()
        assert engine.query_engine.search("", 5) == []
        assert engine.query_engine.search("   ", 5) == []
        assert backend.calls == []

    def test_empty_corpus(self, engine, backend):
        assert engine.query_engine.search("anything", 5) == []
        assert backend.calls == []

    def test_top_k_limits(self, engine):
        for i in range(5):
            engine.on_document_saved(Note(id=f"n{i}", content=f"garden tomatoes variety {i}"))
        engine.flush(5)
        assert len(engine.query_engine.search("garden tomatoes", 3)) == 3

    def test_missing_vectors_still_found_lexically(self, engine):
        engine.config.auto_embed_on_save = False
        engine.on_document_saved(Note(id="n", content="quantum entanglement notes"))
        results = engine.query_engine.search("entanglement", 5)
        assert [r.chunk_id for r in results] == ["notechunk_n_0"]
        assert results[0].semantic_score == 0.0

    def test_falls_back_to_lexical_without_model(self, engine):
        engine.on_document_saved(Note(id="n", content="quantum entanglement notes"))
        engine.flush(5)
        engine.coordinator.set_embedding_model(None)
        results, lexical_only = engine.query_engine.search_ex("entanglement", 5)
        assert [r.chunk_id for r in results] == ["notechunk_n_0"]
        assert lexical_only is False  # no vectors left, nothing to embed against

    def test_falls_back_to_lexical_on_provider_error(self, engine, backend):
        engine.on_document_saved(Note(id="n", content="quantum entanglement notes"))
        engine.flush(5)
        backend.unreachable = True
        results, lexical_only = engine.query_engine.search_ex("entanglement", 5)
        assert lexical_only is True
        assert results[0].chunk_id == "notechunk_n_0"

    def test_hybrid_monotonic_in_lexical_weight(self, engine):
        engine.on_document_saved(Note(id="a", content="apple apple apple orchard harvest"))
        engine.on_document_saved(Note(id="b", content="fruit trees in autumn"))
        engine.flush(5)
        engine.config.lexical_weight = 1.0
        lexical_only = engine.query_engine.search("apple", 5)
        assert all(r.hybrid_score == pytest.approx(r.normalized_lexical_score) for r in lexical_only)
        engine.config.lexical_weight = 0.0
        semantic_only = engine.query_engine.search("apple", 5)
        assert all(r.hybrid_score == pytest.approx(r.normalized_semantic_score) for r in semantic_only)

    def test_lexical_breaks_semantic_tie_at_partial_weight(self, config):
        store = ChunkStore()
        lexical = LexicalIndex()
        for pid, text in (
            ("a", "apple apple orchard"),
            ("b", "apple harvest festival in the old town square"),
            ("c", "pear trees"),
        ):
            chunk = Chunk(id=f"notechunk_{pid}_0", parent_id=pid, kind=DocumentKind.NOTE, content=text)
            store.replace_parent(pid, [chunk])
            lexical.add_or_replace(chunk)
        vectors = _FixedVectors({
            "notechunk_a_0": 0.8, "notechunk_b_0": 0.8, "notechunk_c_0": 0.5,
        })
        config.lexical_weight = 0.3
        engine = HybridQueryEngine(config, store, lexical, vectors, embed_query=lambda q: [1.0])

        results = {r.chunk_id: r for r in engine.search("apple", 5)}
        a, b = results["notechunk_a_0"], results["notechunk_b_0"]
        assert a.normalized_semantic_score == b.normalized_semantic_score
        assert a.lexical_score > b.lexical_score
        assert a.normalized_lexical_score > b.normalized_lexical_score
        assert a.hybrid_score > b.hybrid_score
        assert a.hybrid_score == pytest.approx(0.3 * a.normalized_lexical_score + 0.7 * a.normalized_semantic_score)

    def test_ordering_and_tie_break(self, engine):
        engine.config.auto_embed_on_save = False
        engine.on_document_saved(Note(id="b", content="identical words here"))
        engine.on_document_saved(Note(id="a", content="identical words here"))
        results = engine.query_engine.search("identical", 5)
        assert [r.chunk_id for r in results] == ["notechunk_a_0", "notechunk_b_0"]

    def test_deleted_document_not_returned(self, engine):
        engine.on_document_saved(Note(id="n", content="Paris is the capital of France"))
        engine.flush(5)
        engine.on_document_deleted("n")
        assert engine.query_engine.search("Paris", 5) == []

    def test_rank_normalization(self, engine):
        engine.config.score_normalization = "rank"
        engine.on_document_saved(Note(id="n", content="Paris is the capital of France"))
        engine.flush(5)
        results = engine.query_engine.search("Paris", 5)
        assert results[0].normalized_lexical_score == 1.0


class TestFormatForLLM:
    def _result(self, cid, parent, kind=DocumentKind.NOTE, **kw):
        return HybridRankedChunk(
            chunk_id=cid, parent_id=parent, kind=kind, content=kw.pop("content", f"text of {cid}"),
            hybrid_score=1.0, **kw,
        )

    def test_empty(self):
        out = format_results_for_llm([])
        assert out["sources"] == ""
        assert "No relevant" in out["prompt_context"]

    def test_groups_by_parent_with_footnotes(self):
        results = [
            self._result("notechunk_n1_0", "n1", parent_title="Trip", source_url="https://t"),
            self._result("chatchunk_c1_0_1700000000000_user", "c1", kind=DocumentKind.CHAT,
                         parent_title="Chat", role="user", timestamp=1700000000000),
            self._result("notechunk_n1_1", "n1", parent_title="Trip"),
        ]
        out = format_results_for_llm(results)
        ctx = out["prompt_context"]
        assert ctx.count("[Content Source [^1]]") == 1
        assert "[Content Source [^2]]" in ctx
        assert ctx.index("text of notechunk_n1_1") < ctx.index("[Content Source [^2]]")
        assert "(Role: user, Time: 2023-11-14" in ctx
        assert '[^1]: Note: "Trip" (URL: https://t)' in out["sources"]
        assert '[^2]: Chat: "Chat"' in out["sources"]

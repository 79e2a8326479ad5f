"""Tests for the BM25 LexicalIndex."""
import bm25s
import pytest

from memoria.documents import Chunk, DocumentKind
from memoria.lexical import LexicalIndex, lexical_text, tokenize


def _chunk(cid: str, content: str, title: str = "") -> Chunk:
    return Chunk(id=cid, parent_id=cid, kind=DocumentKind.NOTE, content=content, parent_title=title)


@pytest.fixture
def chunks():
    return [
        _chunk("a", "Paris is the capital of France"),
        _chunk("b", "Berlin is the capital of Germany"),
        _chunk("c", "Sourdough bread needs a mature starter"),
        _chunk("d", "France has excellent bread and cheese"),
    ]


@pytest.fixture
def index(chunks):
    idx = LexicalIndex()
    idx.rebuild_all(chunks)
    return idx


class TestTokenize:
    def test_lowercases_and_drops_stopwords(self):
        tokens = tokenize("The Capital of FRANCE!")
        assert "capital" in tokens
        assert "france" in tokens
        assert "the" not in tokens
        assert "of" not in tokens

    def test_empty(self):
        assert tokenize("") == []
        assert tokenize("   ") == []


class TestScore:
    def test_only_positive_scores(self, index):
        scores = index.score("capital")
        assert set(scores) == {"a", "b"}
        assert all(s > 0 for s in scores.values())

    def test_more_matching_terms_rank_higher(self, index):
        ranked = index.top("capital France", 10)
        assert ranked[0][0] == "a"

    def test_unknown_term(self, index):
        assert index.score("zebra") == {}

    def test_stopword_only_query(self, index):
        assert index.score("the of and") == {}

    def test_empty_index(self):
        assert LexicalIndex().score("anything") == {}

    def test_top_breaks_ties_by_id(self):
        idx = LexicalIndex()
        idx.rebuild_all([_chunk("z", "apple pie"), _chunk("y", "apple pie")])
        assert [cid for cid, _ in idx.top("apple", 10)] == ["y", "z"]


class TestIncremental:
    def test_add_or_replace_matches_rebuild(self, chunks):
        rebuilt = LexicalIndex()
        rebuilt.rebuild_all(chunks)
        incremental = LexicalIndex()
        for chunk in chunks:
            incremental.add_or_replace(chunk)
        assert rebuilt.score("capital bread") == pytest.approx(incremental.score("capital bread"))

    def test_replace_updates_terms(self, index):
        index.add_or_replace(_chunk("c", "Rye crackers"))
        assert "c" not in index.score("sourdough")
        assert "c" in index.score("rye")
        assert len(index) == 4

    def test_remove(self, index):
        assert index.remove("a") is True
        assert "a" not in index
        assert "a" not in index.score("paris")
        assert index.remove("a") is False

    def test_clear(self, index):
        index.clear()
        assert len(index) == 0
        assert index.score("capital") == {}

    def test_added_chunk_searchable_after_query(self, index):
        assert index.score("zebrafish") == {}
        index.add_or_replace(_chunk("e", "Zebrafish regenerate their fins"))
        assert set(index.score("zebrafish")) == {"e"}

    def test_ids_for_parent(self):
        idx = LexicalIndex()
        idx.add_or_replace(_chunk("notechunk_n1_0", "first part"))
        idx.add_or_replace(_chunk("notechunk_n1_1", "second part"))
        idx.add_or_replace(_chunk("notechunk_n2_0", "other note"))
        assert idx.ids_for_parent("n1") == {"notechunk_n1_0", "notechunk_n1_1"}
        idx.remove("notechunk_n1_0")
        assert idx.ids_for_parent("n1") == {"notechunk_n1_1"}
        idx.rebuild_all([_chunk("notechunk_n2_0", "other note")])
        assert idx.ids_for_parent("n1") == set()
        assert idx.ids_for_parent("n2") == {"notechunk_n2_0"}


class TestBM25Scores:
    def test_matches_bm25s(self, index, chunks):
        retriever = bm25s.BM25(k1=1.2, b=0.75, method="lucene")
        retriever.index([tokenize(lexical_text(c)) for c in chunks], show_progress=False)
        expected = retriever.get_scores(tokenize("capital bread"))
        scores = index.score("capital bread")
        for chunk, want in zip(chunks, expected):
            if want > 0:
                assert scores[chunk.id] == pytest.approx(float(want), rel=1e-5)
            else:
                assert chunk.id not in scores

    def test_custom_parameters(self, chunks):
        idx = LexicalIndex(k1=2.0, b=0.0)
        idx.rebuild_all(chunks)
        retriever = bm25s.BM25(k1=2.0, b=0.0, method="lucene")
        retriever.index([tokenize(lexical_text(c)) for c in chunks], show_progress=False)
        expected = retriever.get_scores(tokenize("France"))
        scores = idx.score("France")
        assert scores["a"] == pytest.approx(float(expected[0]), rel=1e-5)
        assert scores["d"] == pytest.approx(float(expected[3]), rel=1e-5)


class TestLexicalText:
    def test_includes_title_and_headings(self):
        chunk = Chunk(
            id="x", parent_id="p", kind=DocumentKind.NOTE, content="body",
            heading_path=["Section"], parent_title="Recipes",
        )
        assert lexical_text(chunk) == "Recipes\nSection\nbody"

    def test_title_is_searchable(self):
        idx = LexicalIndex()
        idx.add_or_replace(_chunk("x", "flour water salt", title="Focaccia"))
        assert "x" in idx.score("focaccia")

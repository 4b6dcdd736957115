"""Tests for the offline CLI commands."""
import pytest

from pdfrag import cli
from pdfrag.db import EmbeddingStore


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "embeddings.db"
    with EmbeddingStore(path) as store:
        store.add_document("manual.pdf:1:0", "Setup steps.", [1.0, 0.0])
        store.add_collection(str(tmp_path / "manual.pdf"), topic="manual.pdf")
    return path


def test_collections_lists_documents(db_path, tmp_path, capsys):
    assert cli.main(["--db-path", str(db_path), "collections"]) == 0

    out = capsys.readouterr().out
    assert str(tmp_path / "manual.pdf") in out
    assert "1 chunks, dimension 2" in out


def test_open_resolves_citation(db_path, tmp_path, monkeypatch):
    opened = []
    monkeypatch.setattr(cli.webbrowser, "open", opened.append)

    code = cli.main(["--db-path", str(db_path), "--data-dir", str(tmp_path), "open", "(1)"])

    assert code == 0
    assert opened == [(tmp_path / "manual.pdf").resolve().as_uri()]


def test_open_unknown_citation_fails(db_path, monkeypatch):
    monkeypatch.setattr(cli.webbrowser, "open", lambda uri: pytest.fail("should not open"))

    assert cli.main(["--db-path", str(db_path), "open", "42"]) == 1
    assert cli.main(["--db-path", str(db_path), "open", "abc"]) == 1


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_parser_rejects_unknown_index():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["--index", "hnsw", "collections"])

import json
from pathlib import Path

import pytest

import db
from conftest import make_kb
from errors import KnowledgeBaseNotFound
from scripts.ingest_corpus import ingest, main


@pytest.fixture
def corpus(tmp_path: Path) -> Path:
    (tmp_path / "forces.md").write_text(
        "---\nconcepts: [force]\nlearning_objectives: [Define force]\n---\n"
        "A force is a push or pull acting on an object.\n",
        encoding="utf-8",
    )
    (tmp_path / "energy.txt").write_text("Kinetic energy depends on mass and motion.\n", encoding="utf-8")
    (tmp_path / "broken.md").write_text(
        "---\ndifficulty: legendary\n---\nThis note declares an unknown difficulty.\n",
        encoding="utf-8",
    )
    (tmp_path / "notes.csv").write_text("force,energy\n", encoding="utf-8")
    return tmp_path


def test_ingest_reports_per_source(kb_service, corpus):
    kb = make_kb(kb_service)

    report = ingest(str(corpus), kb.id, "teacher-1", service=kb_service)

    assert report["documents"] == 3
    assert report["chunks_created"] == 2
    assert set(Path(source).name for source in report["per_source"]) == {"forces.md", "energy.txt"}
    assert [Path(item["source"]).name for item in report["failed"]] == ["broken.md"]
    assert report["failed"][0]["error"] == "invalid_parameters"

    chunks = db.get_chunks(db.list_chunk_ids(kb.id))
    tagged = [chunk for chunk in chunks if chunk.concepts]
    assert tagged[0].concepts == ["force"]
    assert tagged[0].learning_objectives == ["Define force"]


def test_dry_run_stores_nothing(kb_service, corpus):
    kb = make_kb(kb_service)

    report = ingest(str(corpus), kb.id, "teacher-1", service=kb_service, patterns=[".txt"], dry_run=True)

    assert report["documents"] == 1
    assert report["chunks_created"] == 0
    assert db.list_chunk_ids(kb.id) == []


def test_missing_knowledge_base_aborts(kb_service, corpus):
    with pytest.raises(KnowledgeBaseNotFound):
        ingest(str(corpus), "kb_missing", "teacher-1", service=kb_service)


def test_main_exit_codes(kb_service, corpus, capsys):
    kb = make_kb(kb_service, embedding_model="hashing-v1")

    assert main([str(corpus / "energy.txt"), "--knowledge-base", kb.id, "--user", "teacher-1"]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["chunks_created"] == 1

    assert main([str(corpus), "--knowledge-base", kb.id, "--user", "teacher-1", "--dry-run"]) == 0
    capsys.readouterr()

    assert main([str(corpus), "--knowledge-base", kb.id, "--user", "teacher-1"]) == 2
    capsys.readouterr()

    assert main([str(corpus), "--knowledge-base", "kb_missing", "--user", "teacher-1"]) == 1
    error = json.loads(capsys.readouterr().err)
    assert error["error"]["code"] == "knowledge_base_not_found"

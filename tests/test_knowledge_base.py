import pytest

import db
from conftest import make_kb
from errors import ChunkNotFound, EmbeddingUnavailable, InvalidParameters, KnowledgeBaseNotFound, UnauthorizedError
from schemas import ChunkMetadata

LONG_TEXT = " ".join(
    ["Photosynthesis converts light energy into chemical energy inside the cell."] * 20
)


def test_create_applies_defaults(kb_service):
    kb = kb_service.create(
        "teacher-1",
        {"name": "Biology", "subject": "biology", "grade": "7", "tags": ["Plants", "plants", " "]},
    )

    assert kb.id.startswith("kb_")
    assert kb.created_by == "teacher-1"
    assert kb.embedding_model == "hashing-v1"
    assert kb.chunk_size == 1000
    assert kb.chunk_overlap == 200
    assert kb.tags == ["Plants"]
    assert not kb.is_public


def test_create_rejects_bad_parameters(kb_service):
    with pytest.raises(InvalidParameters):
        make_kb(kb_service, chunk_size=100, chunk_overlap=100)
    with pytest.raises(InvalidParameters):
        make_kb(kb_service, embedding_model="not-registered")


def test_process_content_chunks_and_embeds(kb_service):
    kb = make_kb(kb_service, chunk_size=200, chunk_overlap=20)
    chunks = kb_service.process_content(
        kb.id,
        "teacher-1",
        LONG_TEXT,
        ChunkMetadata(concepts=["photosynthesis"], learning_objectives=["Describe photosynthesis"]),
    )

    assert len(chunks) > 1
    assert [chunk.position for chunk in chunks] == list(range(len(chunks)))
    for chunk in chunks:
        assert chunk.text == LONG_TEXT[chunk.start_offset:chunk.end_offset]
        assert chunk.concepts == ["photosynthesis"]
        embedding = db.get_embedding(chunk.id)
        assert embedding.model == "keywords"
        assert embedding.subject == "physics"
    assert db.get_knowledge_base(kb.id).chunk_ids == [chunk.id for chunk in chunks]

    more = kb_service.process_content(kb.id, "teacher-1", "Cells need energy.")
    assert more[0].position == len(chunks)


def test_process_content_requires_owner_and_content(kb_service):
    kb = make_kb(kb_service)
    with pytest.raises(UnauthorizedError):
        kb_service.process_content(kb.id, "someone-else", "Cells need energy.")
    with pytest.raises(KnowledgeBaseNotFound):
        kb_service.process_content("kb_missing", "teacher-1", "Cells need energy.")
    with pytest.raises(InvalidParameters):
        kb_service.process_content(kb.id, "teacher-1", "   ")
    assert kb_service.process_content(kb.id, "admin-1", "Cells need energy.", is_admin=True)


def test_failed_embedding_stores_nothing(kb_service, keyword_embedder):
    class Broken:
        def embed(self, text):
            raise ValueError("backend rejected input")

    keyword_embedder.register("broken", Broken())
    kb = make_kb(kb_service, embedding_model="broken")

    with pytest.raises(EmbeddingUnavailable):
        kb_service.process_content(kb.id, "teacher-1", "Cells need energy.")
    assert db.get_knowledge_base(kb.id).chunk_ids == []


def test_private_knowledge_bases_are_hidden(kb_service):
    private = make_kb(kb_service, is_public=False)
    public = make_kb(kb_service, name="Open physics")

    assert kb_service.get(private.id, "teacher-1").id == private.id
    with pytest.raises(KnowledgeBaseNotFound):
        kb_service.get(private.id, "student-1")
    assert [kb.id for kb in kb_service.list("student-1")] == [public.id]
    assert {kb.id for kb in kb_service.list("teacher-1")} == {private.id, public.id}
    with pytest.raises(KnowledgeBaseNotFound):
        kb_service.stats(private.id, "student-1")


def test_update_and_delete_require_ownership(kb_service):
    kb = make_kb(kb_service)
    with pytest.raises(UnauthorizedError):
        kb_service.update(kb.id, "teacher-2", {"name": "Hijacked"})
    with pytest.raises(UnauthorizedError):
        kb_service.delete(kb.id, "teacher-2")

    updated = kb_service.update(kb.id, "teacher-1", {"name": "Mechanics", "is_public": False})
    assert updated.name == "Mechanics"
    assert not updated.is_public

    kb_service.delete(kb.id, "teacher-1")
    with pytest.raises(KnowledgeBaseNotFound):
        kb_service.get(kb.id)


def test_delete_removes_chunks_and_embeddings(kb_service):
    kb = make_kb(kb_service)
    [chunk] = kb_service.process_content(kb.id, "teacher-1", "Cells need energy.")

    kb_service.delete(kb.id, "teacher-1")

    assert db.get_chunk(chunk.id) is None
    assert db.get_embedding(chunk.id) is None


def test_difficulty_change_cascades_to_chunks(kb_service):
    kb = make_kb(kb_service)
    [plain] = kb_service.process_content(kb.id, "teacher-1", "Force basics.")
    [pinned] = kb_service.process_content(
        kb.id, "teacher-1", "Force in depth.", ChunkMetadata(difficulty="expert")
    )
    assert pinned.difficulty_override

    kb_service.update(kb.id, "teacher-1", {"difficulty": "intermediate"})

    assert db.get_chunk(plain.id).difficulty == "intermediate"
    assert db.get_chunk(pinned.id).difficulty == "expert"
    assert db.get_embedding(plain.id).difficulty == "intermediate"


def test_model_change_regenerates_embeddings(kb_service):
    kb = make_kb(kb_service)
    [chunk] = kb_service.process_content(kb.id, "teacher-1", "Cells need energy.")

    kb_service.update(kb.id, "teacher-1", {"embedding_model": "hashing-v1"})

    embedding = db.get_embedding(chunk.id)
    assert embedding.model == "hashing-v1"
    assert embedding.dimensions == 64
    assert kb_service.stats(kb.id)["stale_embeddings"] == 0


@pytest.mark.parametrize("failure", ["missing_package", "embed_error"])
def test_failed_model_change_keeps_knowledge_base_searchable(kb_service, keyword_embedder, retriever, failure):
    def missing_package():
        raise ImportError("No module named 'sentence_transformers'")

    class Rejecting:
        def embed(self, text):
            raise ValueError("backend rejected input")

    keyword_embedder.register("broken-model", missing_package if failure == "missing_package" else Rejecting())
    kb = make_kb(kb_service)
    [chunk] = kb_service.process_content(kb.id, "teacher-1", "Force causes acceleration.")

    with pytest.raises(EmbeddingUnavailable):
        kb_service.update(kb.id, "teacher-1", {"embedding_model": "broken-model", "description": "renamed"})

    stored = db.get_knowledge_base(kb.id)
    assert stored.embedding_model == "keywords"
    assert stored.description != "renamed"
    assert db.get_embedding(chunk.id).model == "keywords"
    assert [result.chunk.id for result in retriever.search("force")] == [chunk.id]


def test_generate_embeddings_fills_gaps(kb_service):
    kb = make_kb(kb_service)
    [chunk] = kb_service.process_content(kb.id, "teacher-1", "Cells need energy.")
    db.delete_embeddings([chunk.id])
    assert kb_service.stats(kb.id)["embedded_chunks"] == 0

    assert kb_service.generate_embeddings(kb.id, "teacher-1") == 1
    assert kb_service.generate_embeddings(kb.id, "teacher-1") == 0
    assert db.get_embedding(chunk.id) is not None


def test_align_curriculum_updates_metadata(kb_service):
    kb = make_kb(kb_service)
    [chunk] = kb_service.process_content(kb.id, "teacher-1", "Cells need energy.")

    aligned = kb_service.align_curriculum(
        chunk.id,
        "teacher-1",
        {
            "concepts": ["cell", "Cell", "energy"],
            "difficulty": "advanced",
            "course_id": "bio-7",
            "standards_alignment": ["NGSS MS-LS1-7", " ngss ms-ls1-7 "],
            "assessment_criteria": ["Explains where cells get energy"],
        },
    )

    assert aligned.concepts == ["cell", "energy"]
    assert aligned.difficulty == "advanced"
    assert aligned.difficulty_override
    assert aligned.course_id == "bio-7"
    assert aligned.standards_alignment == ["NGSS MS-LS1-7"]
    assert db.get_chunk(chunk.id).assessment_criteria == ["Explains where cells get energy"]
    assert db.get_embedding(chunk.id).concepts == ["cell", "energy"]

    with pytest.raises(ChunkNotFound):
        kb_service.align_curriculum("chunk_missing", "teacher-1", {"concepts": ["x"]})


def test_stats_summarise_content(kb_service):
    kb = make_kb(kb_service)
    kb_service.process_content(kb.id, "teacher-1", "Cells need energy.", ChunkMetadata(concepts=["cell"]))
    kb_service.process_content(kb.id, "teacher-1", "Force basics.", ChunkMetadata(concepts=["force", "Cell"]))

    stats = kb_service.stats(kb.id)

    assert stats["total_chunks"] == 2
    assert stats["embedded_chunks"] == 2
    assert stats["validated_chunks"] == 0
    assert stats["concepts_covered"] == ["cell", "force"]

"""Tests for lexvault.documents.service — DocumentRepository facade."""

import hashlib
from datetime import timedelta

import pytest

from lexvault.db.base import utcnow
from lexvault.documents.models import (
    AccessLevel,
    DocumentFilter,
    DocumentStatus,
    DocumentType,
    NewDocument,
)
from lexvault.documents.service import DocumentRepository
from lexvault.engine.config import LexVaultConfig
from lexvault.engine.errors import (
    LexVaultLockedError,
    LexVaultNotFoundError,
    LexVaultValidationError,
)


class TestCreate:

    def test_contract_scenario(self, repo, session):
        doc = repo.create(session, NewDocument(filename="contract.pdf", owner_id="alice"), b"%PDF-1.7")
        assert doc.current_version == 1
        assert doc.mime_type == "application/pdf"
        assert doc.folder_id is None
        assert doc.title == "contract.pdf"
        assert doc.status == DocumentStatus.ACTIVE
        versions = repo.versions(session, doc.id)
        assert [v.version_number for v in versions] == [1]
        assert versions[0].storage_path == doc.storage_path
        assert doc.checksum == hashlib.sha256(b"%PDF-1.7").hexdigest()

    def test_accepts_dict_and_explicit_id(self, repo, session, store):
        doc = repo.create(session, {
            "id": "matter-42-doc",
            "filename": "Brief.DOCX",
            "owner_id": "bob",
            "title": "Opening brief",
            "document_type": DocumentType.BRIEF,
            "case_id": "case-42",
            "tags": ["draft"],
        }, b"brief")
        assert doc.id == "matter-42-doc"
        assert doc.storage_path == str(store.deriver.path_for("matter-42-doc", 1))
        assert doc.mime_type.endswith("wordprocessingml.document")
        assert doc.document_type == DocumentType.BRIEF
        assert doc.tags == ["draft"]

    def test_duplicate_id(self, repo, session):
        repo.create(session, NewDocument(id="dup-1", filename="a.txt", owner_id="u"), b"a")
        with pytest.raises(LexVaultValidationError):
            repo.create(session, NewDocument(id="dup-1", filename="b.txt", owner_id="u"), b"b")

    @pytest.mark.parametrize("payload", [
        {"filename": "", "owner_id": "u"},
        {"filename": "../etc/passwd", "owner_id": "u"},
        {"filename": "a.pdf", "owner_id": ""},
        {"filename": "a.pdf", "owner_id": "u", "id": "x"},
        {"filename": "a.pdf", "owner_id": "u", "id": "../../escape"},
    ])
    def test_invalid_metadata(self, repo, session, payload):
        with pytest.raises(LexVaultValidationError) as exc_info:
            repo.create(session, payload, b"x")
        assert exc_info.value.validation_errors

    def test_missing_folder_creates_nothing(self, repo, session):
        with pytest.raises(LexVaultNotFoundError):
            repo.create(session, NewDocument(filename="a.pdf", owner_id="u", folder_id="nope"), b"x")
        assert repo.list(session) == []

    def test_in_folder(self, repo, session):
        folder = repo.folders.create(session, "Cases", owner_id="u")
        doc = repo.create(session, NewDocument(filename="a.pdf", owner_id="u", folder_id=folder.id), b"x")
        assert doc.folder_id == folder.id

    def test_create_audited(self, repo, session, audit_log, read_audit):
        doc = repo.create(session, NewDocument(filename="a.pdf", owner_id="u"), b"x")
        entries = read_audit("documents")
        assert entries[0]["event"] == "document_create"
        assert entries[0]["document_id"] == doc.id


class TestGetUpdate:

    def test_get_missing(self, repo, session):
        with pytest.raises(LexVaultNotFoundError):
            repo.get(session, "nope")

    def test_update_metadata(self, repo, session, make_document):
        doc = make_document()
        folder = repo.folders.create(session, "Cases", owner_id="u")
        changed = doc.model_copy(update={
            "title": "Master services agreement",
            "description": "signed copy",
            "document_type": DocumentType.CONTRACT,
            "folder_id": folder.id,
            "case_id": "case-7",
            "access_level": AccessLevel.WRITE,
            "tags": ["signed"],
            # Ignored: owned by the version chain
            "current_version": 9,
            "storage_path": "/elsewhere",
        })
        updated = repo.update(session, changed)
        assert updated.title == "Master services agreement"
        assert updated.document_type == DocumentType.CONTRACT
        assert updated.folder_id == folder.id
        assert updated.access_level == AccessLevel.WRITE
        assert updated.tags == ["signed"]
        assert updated.current_version == 1
        assert updated.storage_path == doc.storage_path

    def test_update_dict(self, repo, session, make_document):
        doc = make_document()
        assert repo.update(session, {"id": doc.id, "title": "Renamed"}).title == "Renamed"

    def test_update_missing(self, repo, session, make_document):
        doc = make_document()
        with pytest.raises(LexVaultNotFoundError):
            repo.update(session, doc.model_copy(update={"id": "nope"}))

    def test_update_to_missing_folder(self, repo, session, make_document):
        doc = make_document()
        with pytest.raises(LexVaultNotFoundError):
            repo.update(session, doc.model_copy(update={"folder_id": "nope"}))

    def test_update_cannot_lock(self, repo, session, make_document):
        doc = make_document()
        updated = repo.update(session, doc.model_copy(update={"status": DocumentStatus.LOCKED, "title": "T"}))
        assert updated.title == "T"
        assert updated.status == DocumentStatus.ACTIVE
        assert not updated.is_locked

    def test_checkout_snapshot_usable_after_checkin(self, repo, session, make_document):
        doc = make_document()
        snapshot = repo.checkout(session, doc.id, "userA")
        repo.checkin(session, doc.id, "userA")
        updated = repo.update(session, snapshot.model_copy(update={"title": "Renamed"}))
        assert updated.title == "Renamed"
        assert updated.status == DocumentStatus.ACTIVE
        assert not updated.is_locked

    @pytest.mark.parametrize("payload", [
        {"document_type": 99},
        {"status": 7},
        {"access_level": "x"},
        {"tags": "not-a-list"},
    ])
    def test_invalid_dict_values(self, repo, session, make_document, payload):
        doc = make_document()
        with pytest.raises(LexVaultValidationError) as exc_info:
            repo.update(session, {"id": doc.id, **payload})
        assert exc_info.value.validation_errors
        after = repo.get(session, doc.id)
        assert (after.document_type, after.status, after.access_level) == (doc.document_type, doc.status, doc.access_level)

    def test_invalid_model_values(self, repo, session, make_document):
        doc = make_document()
        with pytest.raises(LexVaultValidationError):
            repo.update(session, doc.model_copy(update={"document_type": 99}))

    def test_dict_without_id(self, repo, session):
        with pytest.raises(LexVaultValidationError):
            repo.update(session, {"title": "No id"})

    def test_dict_leaves_unset_fields(self, repo, session, make_document):
        doc = make_document(case_id="c1", tags=["keep"])
        updated = repo.update(session, {"id": doc.id, "description": "signed"})
        assert updated.description == "signed"
        assert updated.case_id == "c1"
        assert updated.tags == ["keep"]
        assert repo.update(session, {"id": doc.id, "case_id": None}).case_id is None

    def test_stale_copy_does_not_unlock(self, repo, session, make_document):
        doc = make_document()
        repo.checkout(session, doc.id, "userA")
        updated = repo.update(session, doc.model_copy(update={"title": "New title"}))
        assert updated.title == "New title"
        assert updated.status == DocumentStatus.LOCKED
        assert updated.locked_by == "userA"

    def test_cannot_archive_locked(self, repo, session, make_document):
        doc = make_document()
        repo.checkout(session, doc.id, "userA")
        with pytest.raises(LexVaultLockedError):
            repo.update(session, doc.model_copy(update={"status": DocumentStatus.ARCHIVED}))


class TestDelete:

    def test_soft_delete(self, repo, session, make_document):
        doc = make_document()
        repo.checkout(session, doc.id, "userA")
        repo.delete(session, doc.id)
        fetched = repo.get(session, doc.id)
        assert fetched.status == DocumentStatus.DELETED
        assert not fetched.is_locked
        assert repo.list(session) == []
        assert [d.id for d in repo.list(session, DocumentFilter(status=DocumentStatus.DELETED))] == [doc.id]
        assert repo.download(session, doc.id) == b"v1 content"

    def test_permanent_delete(self, repo, session, make_document, store):
        doc = make_document()
        repo.upload_new_version(session, doc.id, b"v2", None, "owner")
        paths = [v.storage_path for v in repo.versions(session, doc.id)]
        repo.delete(session, doc.id, permanent=True)
        with pytest.raises(LexVaultNotFoundError):
            repo.get(session, doc.id)
        assert not any(store.exists(p) for p in paths)
        assert list(store.iter_version_files()) == []

    def test_delete_missing(self, repo, session):
        with pytest.raises(LexVaultNotFoundError):
            repo.delete(session, "nope", permanent=True)


class TestList:

    @pytest.fixture
    def corpus(self, repo, session):
        folder = repo.folders.create(session, "Cases", owner_id="u")
        docs = {
            "msa": repo.create(session, NewDocument(
                filename="msa.pdf", title="Master Services Agreement", owner_id="alice",
                document_type=DocumentType.CONTRACT, case_id="c1", folder_id=folder.id,
            ), b"a" * 30),
            "memo": repo.create(session, NewDocument(
                filename="memo.docx", title="Strategy memo", description="privileged 100%",
                owner_id="bob", document_type=DocumentType.MEMO, case_id="c1",
            ), b"b" * 10),
            "nda": repo.create(session, NewDocument(
                filename="nda.pdf", title="NDA", owner_id="alice",
                document_type=DocumentType.CONTRACT, case_id="c2", access_level=AccessLevel.ADMIN,
            ), b"c" * 20),
        }
        return folder, docs

    def _titles(self, docs):
        return sorted(d.title for d in docs)

    def test_default_lists_all_active(self, repo, session, corpus):
        assert len(repo.list(session)) == 3
        assert repo.count(session) == 3

    def test_and_combination(self, repo, session, corpus):
        found = repo.list(session, DocumentFilter(document_type=DocumentType.CONTRACT, case_id="c1"))
        assert self._titles(found) == ["Master Services Agreement"]

    def test_folder_filter(self, repo, session, corpus):
        folder, _ = corpus
        assert self._titles(repo.list(session, {"folder_id": folder.id})) == ["Master Services Agreement"]

    def test_text_search_is_case_insensitive(self, repo, session, corpus):
        assert self._titles(repo.list(session, DocumentFilter(text="services"))) == ["Master Services Agreement"]
        assert self._titles(repo.list(session, DocumentFilter(text="NDA.PDF"))) == ["NDA"]
        assert self._titles(repo.list(session, DocumentFilter(text="privileged"))) == ["Strategy memo"]

    def test_text_wildcards_are_literal(self, repo, session, corpus):
        assert self._titles(repo.list(session, DocumentFilter(text="100%"))) == ["Strategy memo"]
        assert repo.list(session, DocumentFilter(text="%")) != []
        assert repo.list(session, DocumentFilter(text="_x_")) == []

    def test_owner_mime_access(self, repo, session, corpus):
        assert self._titles(repo.list(session, DocumentFilter(owner_id="bob"))) == ["Strategy memo"]
        assert len(repo.list(session, DocumentFilter(mime_type="application/pdf"))) == 2
        assert self._titles(repo.list(session, DocumentFilter(access_level=AccessLevel.ADMIN))) == ["NDA"]

    def test_status_filter(self, repo, session, corpus):
        _, docs = corpus
        repo.checkout(session, docs["nda"].id, "userA")
        locked = repo.list(session, DocumentFilter(status=DocumentStatus.LOCKED))
        assert [d.id for d in locked] == [docs["nda"].id]

    def test_created_range(self, repo, session, corpus):
        now = utcnow()
        assert repo.count(session, DocumentFilter(created_after=now - timedelta(hours=1))) == 3
        assert repo.count(session, DocumentFilter(created_before=now - timedelta(hours=1))) == 0

    def test_ordering_and_paging(self, repo, session, corpus):
        by_size = repo.list(session, DocumentFilter(order_by="file_size", order_desc=True))
        assert [d.file_size for d in by_size] == [30, 20, 10]
        page = repo.list(session, DocumentFilter(order_by="file_size", offset=1, limit=1))
        assert [d.file_size for d in page] == [20]
        assert repo.count(session, DocumentFilter(offset=1, limit=1)) == 3

    def test_invalid_order(self, repo, session):
        with pytest.raises(LexVaultValidationError):
            repo.list(session, {"order_by": "checksum"})

    def test_default_page_size(self, store, session, corpus):
        paged = DocumentRepository(store, default_page_size=2)
        assert len(paged.list(session)) == 2


class TestContent:

    def test_round_trip_all_versions(self, repo, session, make_document):
        doc = make_document(content=b"first")
        for body in (b"second", b"third" * 50, b""):
            repo.upload_new_version(session, doc.id, body, None, "owner")
        doc = repo.get(session, doc.id)
        assert doc.current_version == 4
        for k in range(1, doc.current_version + 1):
            data = repo.download(session, doc.id, k)
            assert hashlib.sha256(data).hexdigest() == repo.get_version(session, doc.id, k).checksum

    def test_current_version_aliases(self, repo, session, make_document):
        doc = make_document(content=b"one")
        repo.upload_new_version(session, doc.id, b"two", None, "owner")
        assert repo.download(session, doc.id) == b"two"
        assert repo.download(session, doc.id, 0) == b"two"
        assert repo.download(session, doc.id, -3) == b"two"
        assert repo.download(session, doc.id, 1) == b"one"

    def test_download_missing(self, repo, session, make_document):
        doc = make_document()
        with pytest.raises(LexVaultNotFoundError):
            repo.download(session, doc.id, 5)
        with pytest.raises(LexVaultNotFoundError):
            repo.download(session, "nope")

    def test_download_to(self, repo, session, make_document, tmp_path):
        doc = make_document(content=b"to disk")
        dest = repo.download_to(session, doc.id, tmp_path / "out.pdf")
        assert dest.read_bytes() == b"to disk"

    def test_upload_to_archived_rejected(self, repo, session, make_document):
        doc = make_document()
        repo.update(session, doc.model_copy(update={"status": DocumentStatus.ARCHIVED}))
        with pytest.raises(LexVaultValidationError):
            repo.upload_new_version(session, doc.id, b"x", None, "owner")

    def test_restore_version(self, repo, session, make_document):
        doc = make_document(content=b"original")
        repo.upload_new_version(session, doc.id, b"bad edit", None, "owner")
        restored = repo.restore_version(session, doc.id, 1, "owner")
        assert restored.version_number == 3
        assert restored.change_description == "Restored from version 1"
        assert repo.download(session, doc.id) == b"original"
        assert len(repo.versions(session, doc.id)) == 3

    def test_restore_missing_version(self, repo, session, make_document):
        doc = make_document()
        with pytest.raises(LexVaultNotFoundError):
            repo.restore_version(session, doc.id, 4, "owner")
        assert repo.get(session, doc.id).current_version == 1

    def test_verify(self, repo, session, make_document):
        doc = make_document()
        repo.upload_new_version(session, doc.id, b"v2", None, "owner")
        assert repo.verify(session, doc.id) == {1: True, 2: True}
        with open(repo.get_version(session, doc.id, 1).storage_path, "ab") as f:
            f.write(b"!")
        assert repo.verify(session, doc.id) == {1: False, 2: True}
        assert repo.verify(session, doc.id, version=2) == {2: True}
        assert repo.verify(session, doc.id, version=0) == {2: True}
        assert repo.verify(session, doc.id, version=-1) == {2: True}


class TestPlacement:

    def test_move(self, repo, session, make_document):
        doc = make_document()
        folder = repo.folders.create(session, "Cases", owner_id="u")
        assert repo.move(session, doc.id, folder.id).folder_id == folder.id
        assert repo.move(session, doc.id, None).folder_id is None

    def test_move_to_missing_folder(self, repo, session, make_document):
        doc = make_document()
        with pytest.raises(LexVaultNotFoundError):
            repo.move(session, doc.id, "nope")

    def test_copy(self, repo, session, make_document):
        doc = make_document(content=b"one", case_id="c1", title="Lease")
        repo.upload_new_version(session, doc.id, b"two", None, "owner")
        folder = repo.folders.create(session, "Other", owner_id="u")

        copied = repo.copy(session, doc.id, "carol", destination_case_id="c9", destination_folder_id=folder.id)

        assert copied.id != doc.id
        assert copied.current_version == 1
        assert copied.owner_id == "carol"
        assert copied.case_id == "c9"
        assert copied.folder_id == folder.id
        assert copied.title == "Lease"
        assert repo.download(session, copied.id) == b"two"
        assert repo.get(session, doc.id).current_version == 2

    def test_copy_defaults_to_source_placement(self, repo, session, make_document):
        doc = make_document(case_id="c1")
        assert repo.copy(session, doc.id, "carol").case_id == "c1"


class TestFromConfig:

    def test_from_config(self, tmp_path):
        config = LexVaultConfig(
            storage={"base_path": str(tmp_path / "vault"), "chunk_size": 4096},
            documents={"max_upload_size_mb": 2, "lock_ttl_minutes": 60, "default_page_size": 25},
        )
        built = DocumentRepository.from_config(config)
        assert built.store.base_path == tmp_path / "vault"
        assert built.version_chain._max_upload_bytes == 2 * 1024 * 1024
        assert built.locks._ttl == timedelta(minutes=60)
        assert "vault" in repr(built)

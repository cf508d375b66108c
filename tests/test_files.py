import pytest

from filevault.core.errors import AccessDeniedError, ConflictError, InvalidError, NotFoundError
from filevault.models.file import FileMeta
from filevault.services.files import FileManager, LineageLocks, _lineage_locks, versioned_name


@pytest.fixture()
def inbox(folders, admin):
    return folders.create("inbox", admin)


def upload_versions(files, folder, principal, stage, count, name="report.pdf"):
    return [
        files.upload(folder, stage(f"content v{i}".encode(), name), principal).file
        for i in range(1, count + 1)
    ]


def current_versions(db_session, folder):
    return (
        db_session.query(FileMeta)
        .filter(FileMeta.folder_id == folder.id, FileMeta.is_current_version.is_(True))
        .all()
    )


@pytest.mark.parametrize(
    "name, version, expected",
    [
        ("report.pdf", 1, "report.pdf"),
        ("report.pdf", 2, "report(1).pdf"),
        ("report.pdf", 5, "report(4).pdf"),
        ("README", 3, "README(2)"),
        ("archive.tar.gz", 2, "archive.tar(1).gz"),
    ],
)
def test_versioned_name(name, version, expected):
    assert versioned_name(name, version) == expected


def test_repeated_uploads_form_a_version_chain(files, inbox, admin, stage, db_session, storage):
    v1, v2, v3 = upload_versions(files, inbox, admin, stage, 3)

    assert [v.filename for v in (v1, v2, v3)] == ["report.pdf", "report(1).pdf", "report(2).pdf"]
    assert [v.version for v in (v1, v2, v3)] == [1, 2, 3]
    assert [v.id for v in current_versions(db_session, inbox)] == [v3.id]
    assert v2.original_file_id == v1.id and v3.original_file_id == v1.id
    assert v3.previous_versions == [v1.id, v2.id]
    assert storage.read_file("inbox/report(1).pdf") == b"content v2"


def test_upload_records_integrity_fields(files, inbox, admin, stage):
    record = files.upload(inbox, stage(b"%PDF-1.7"), admin).file

    assert record.checksum_algorithm == "sha256"
    assert len(record.file_hash) == 64
    assert record.size == 8
    assert record.extension == ".pdf"
    assert record.path == "inbox/report.pdf"


def test_duplicate_content_is_not_stored_twice(files, inbox, admin, stage, db_session):
    first = files.upload(inbox, stage(b"same bytes", "one.pdf"), admin)
    second = files.upload(inbox, stage(b"same bytes", "two.pdf"), admin)

    assert not first.duplicate
    assert second.duplicate
    assert second.file.id == first.file.id
    assert db_session.query(FileMeta).count() == 1


def test_same_content_in_other_folder_is_stored(files, folders, inbox, admin, stage):
    other = folders.create("other", admin)
    files.upload(inbox, stage(b"same bytes"), admin)

    outcome = files.upload(other, stage(b"same bytes"), admin)

    assert not outcome.duplicate
    assert outcome.file.path == "other/report.pdf"


def test_taken_version_name_skips_ahead(files, inbox, admin, stage):
    squatter = files.upload(inbox, stage(b"squatter", "report(1).pdf"), admin).file
    files.upload(inbox, stage(b"first"), admin)

    second = files.upload(inbox, stage(b"second"), admin).file

    assert squatter.filename == "report(1).pdf"
    assert second.filename == "report(2).pdf"
    assert second.version == 2


def test_name_search_is_bounded(db_session, storage, settings, inbox, admin, stage):
    limited = FileManager(db_session, storage, settings.model_copy(update={"max_name_attempts": 1}))
    limited.upload(inbox, stage(b"first"), admin)
    limited.upload(inbox, stage(b"squatter", "report(1).pdf"), admin)

    with pytest.raises(ConflictError):
        limited.upload(inbox, stage(b"second"), admin)


def test_existing_physical_object_is_a_conflict(files, inbox, admin, stage, storage):
    (storage.root / "inbox" / "notes.txt").write_bytes(b"stray")
    item = stage(b"fresh notes", "notes.txt", "text/plain")

    with pytest.raises(ConflictError):
        files.upload(inbox, item, admin)

    assert item.path.exists()
    assert (storage.root / "inbox" / "notes.txt").read_bytes() == b"stray"


@pytest.mark.parametrize(
    "name, mimetype",
    [
        ("tool.exe", "application/x-msdownload"),
        ("page.html", "text/html"),
        ("bad/name.pdf", "application/pdf"),
        ("", "application/pdf"),
    ],
)
def test_upload_rejects_invalid_input(files, inbox, admin, stage, name, mimetype):
    with pytest.raises(InvalidError):
        files.upload(inbox, stage(b"data", name, mimetype), admin)


def test_upload_size_limit(db_session, storage, settings, inbox, admin, stage):
    limited = FileManager(db_session, storage, settings.model_copy(update={"max_upload_size_bytes": 3}))
    with pytest.raises(InvalidError):
        limited.upload(inbox, stage(b"four"), admin)


def test_upload_approval_depends_on_uploader(files, folders, inbox, admin, alice, alice_user, stage):
    folders.grant_access(inbox.id, alice_user.id, "write")

    by_admin = files.upload(inbox, stage(b"from admin", "a.pdf"), admin).file
    by_alice = files.upload(inbox, stage(b"from alice", "b.pdf"), alice).file

    assert by_admin.approval_status == "approved"
    assert by_admin.approved_by_id == admin.id
    assert by_alice.approval_status == "pending"
    assert by_alice.approved_by_id is None


def test_upload_many_isolates_item_failures(files, inbox, admin, stage):
    batch = files.upload_many(
        inbox,
        [
            stage(b"good", "good.txt", "text/plain"),
            stage(b"bad", "tool.exe", "application/x-msdownload"),
        ],
        admin,
    )

    assert [f.filename for f in batch.saved] == ["good.txt"]
    assert [name for name, _ in batch.failures] == ["tool.exe"]
    assert isinstance(batch.failures[0][1], InvalidError)


def test_upload_many_duplicates_count_as_outcomes(files, inbox, admin, stage):
    files.upload(inbox, stage(b"known"), admin)

    batch = files.upload_many(inbox, [stage(b"known", "again.pdf")], admin)

    assert batch.saved == []
    assert len(batch.duplicates) == 1


def test_upload_many_fails_when_nothing_was_stored(files, inbox, admin, stage):
    with pytest.raises(ConflictError):
        files.upload_many(inbox, [stage(b"bad", "tool.exe", "application/x-msdownload")], admin)
    with pytest.raises(InvalidError):
        files.upload_many(inbox, [], admin)


def test_upload_many_requires_write_access(files, folders, inbox, alice, alice_user, stage):
    folders.grant_access(inbox.id, alice_user.id, "read")
    with pytest.raises(AccessDeniedError):
        files.upload_many(inbox, [stage(b"data")], alice)


def test_rename_keeps_version(files, inbox, admin, stage, storage):
    _, v2 = upload_versions(files, inbox, admin, stage, 2)

    renamed = files.rename(v2.id, "summary.pdf")

    assert renamed.filename == "summary.pdf"
    assert renamed.original_filename == "summary.pdf"
    assert renamed.path == "inbox/summary.pdf"
    assert renamed.version == 2
    assert storage.read_file("inbox/summary.pdf") == b"content v2"
    assert not storage.exists("inbox/report(1).pdf")


def test_rename_rejects_taken_or_invalid_names(files, inbox, admin, stage):
    v1, v2 = upload_versions(files, inbox, admin, stage, 2)
    with pytest.raises(ConflictError):
        files.rename(v2.id, "report.pdf")
    with pytest.raises(InvalidError):
        files.rename(v2.id, "../escape.pdf")
    with pytest.raises(NotFoundError):
        files.rename(9999, "whatever.pdf")


def test_rename_moves_record_into_its_own_lineage(files, inbox, admin, stage, db_session):
    v1, v2, v3 = upload_versions(files, inbox, admin, stage, 3)

    renamed = files.rename(v2.id, "summary.pdf")
    newer = files.upload(inbox, stage(b"summary v2", "summary.pdf"), admin).file

    assert [v.id for v in files.find_versions(v1.id)] == [v1.id, v3.id]
    assert v3.previous_versions == [v1.id]
    assert v3.is_current_version
    assert [v.id for v in files.find_versions(newer.id)] == [renamed.id, newer.id]
    assert newer.original_file_id == renamed.id
    assert newer.previous_versions == [renamed.id]
    assert not renamed.is_current_version

    current = sorted(v.id for v in current_versions(db_session, inbox))
    assert current == sorted([v3.id, newer.id])


def test_rename_current_version_promotes_previous(files, inbox, admin, stage):
    v1, v2 = upload_versions(files, inbox, admin, stage, 2)

    renamed = files.rename(v2.id, "summary.pdf")

    assert renamed.is_current_version
    assert renamed.original_file_id is None
    assert renamed.previous_versions == []
    assert v1.is_current_version


def test_rename_original_reroots_lineage(files, inbox, admin, stage):
    v1, v2, v3 = upload_versions(files, inbox, admin, stage, 3)

    files.rename(v1.id, "summary.pdf")

    assert v2.original_file_id is None
    assert v3.original_file_id == v2.id
    assert [v.id for v in files.find_versions(v3.id)] == [v2.id, v3.id]


def test_rename_onto_another_lineage_is_a_conflict(files, inbox, admin, stage, storage):
    o1, o2 = upload_versions(files, inbox, admin, stage, 2, name="other.pdf")
    notes = files.upload(inbox, stage(b"notes", "notes.pdf"), admin).file
    files.delete(o1.id)

    # "other.pdf" itself is free again but its lineage lives on in "other(1).pdf"
    with pytest.raises(ConflictError):
        files.rename(notes.id, "other.pdf")
    assert notes.filename == "notes.pdf"
    assert storage.exists("inbox/notes.pdf")


def test_restore_creates_new_current_version(files, inbox, admin, stage, db_session, storage):
    v1, v2, v3 = upload_versions(files, inbox, admin, stage, 3)

    restored = files.restore(v1.id, admin)

    assert restored.version == 4
    assert restored.filename == "report(3).pdf"
    assert restored.file_hash == v1.file_hash
    assert storage.read_file(restored.path) == b"content v1"
    assert restored.original_file_id == v1.id
    assert restored.previous_versions == [v1.id, v2.id, v3.id]
    assert [v.id for v in current_versions(db_session, inbox)] == [restored.id]
    assert [v.version for v in files.find_versions(v2.id)] == [1, 2, 3, 4]


def test_find_versions_is_the_same_from_any_member(files, inbox, admin, stage):
    versions = upload_versions(files, inbox, admin, stage, 3)
    expected = [v.id for v in versions]

    for member in versions:
        assert [v.id for v in files.find_versions(member.id)] == expected


def test_delete_current_version_promotes_previous(files, inbox, admin, stage, db_session, storage):
    v1, v2, v3 = upload_versions(files, inbox, admin, stage, 3)
    v2_id, v3_id = v2.id, v3.id

    files.delete(v3_id)

    assert db_session.get(FileMeta, v3_id) is None
    assert not storage.exists("inbox/report(2).pdf")
    assert [v.id for v in current_versions(db_session, inbox)] == [v2_id]


def test_delete_original_reroots_lineage(files, inbox, admin, stage):
    v1, v2, v3 = upload_versions(files, inbox, admin, stage, 3)
    v1_id, v2_id, v3_id = v1.id, v2.id, v3.id

    files.delete(v1_id)

    remaining = files.find_versions(v3_id)
    assert [v.id for v in remaining] == [v2_id, v3_id]
    assert remaining[0].original_file_id is None
    assert remaining[1].original_file_id == v2_id
    assert remaining[1].previous_versions == [v2_id]


def test_delete_tolerates_missing_object(files, inbox, admin, stage, storage, db_session):
    record = files.upload(inbox, stage(b"gone"), admin).file
    record_id = record.id
    storage.unlink(record.path)

    files.delete(record_id)

    assert db_session.get(FileMeta, record_id) is None


def test_delete_folder_records(files, inbox, admin, stage, db_session):
    upload_versions(files, inbox, admin, stage, 2)

    assert files.delete_folder_records(inbox.id) == 2
    assert db_session.query(FileMeta).count() == 0


def test_list_by_status_and_search(files, folders, inbox, admin, alice, alice_user, stage):
    folders.grant_access(inbox.id, alice_user.id, "write")
    item = stage(b"quarterly", "alpha.pdf")
    item.description = "Quarterly numbers"
    item.tags = ["finance"]
    approved = files.upload(inbox, item, admin).file
    pending = files.upload(inbox, stage(b"draft", "draft.pdf"), alice).file

    assert [f.id for f in files.list_by_status("approved")] == [approved.id]
    assert [f.id for f in files.list_by_status("pending")] == [pending.id]
    assert {f.id for f in files.list_by_status()} == {approved.id, pending.id}
    assert [f.id for f in files.list_by_status(search="ALPHA")] == [approved.id]
    assert [f.id for f in files.list_by_status(search="quarterly")] == [approved.id]
    assert [f.id for f in files.list_by_status(search="finance")] == [approved.id]
    with pytest.raises(InvalidError):
        files.list_by_status("archived")


def test_set_approval_requires_reviewer(files, inbox, admin, alice, reviewer, stage):
    record = files.upload(inbox, stage(b"data"), admin).file
    with pytest.raises(AccessDeniedError):
        files.set_approval(record.id, "disapproved", alice, reason="no")

    updated = files.set_approval(record.id, "disapproved", reviewer, reason="blurry scan")
    assert updated.approval_status == "disapproved"
    assert updated.rejected_by_id == reviewer.id


def test_record_download(files, inbox, admin, stage, db_session):
    record = files.upload(inbox, stage(b"data"), admin).file

    files.record_download(record)
    files.record_download(record)

    db_session.refresh(record)
    assert record.download_count == 2


def test_lineage_locks_are_dropped_when_released():
    locks = LineageLocks()

    with locks(1, "a.pdf"):
        with pytest.raises(RuntimeError):
            with locks(1, "b.pdf"):
                assert len(locks) == 2
                raise RuntimeError("boom")
        assert len(locks) == 1

    assert len(locks) == 0


def test_uploads_leave_no_lineage_locks_behind(files, inbox, admin, stage):
    upload_versions(files, inbox, admin, stage, 3)
    upload_versions(files, inbox, admin, stage, 2, name="other.pdf")

    assert len(_lineage_locks) == 0

"""Unit tests for FileDraftStore."""

import json
from datetime import UTC, datetime, timedelta

import pytest

from guidedflow.core.drafts.model import SaveReason, SessionDraft, calculate_progress
from guidedflow.core.errors import DraftNotFoundError, RecoveryCorrupted


@pytest.mark.asyncio
async def test_put_assigns_version_and_timestamps(file_store, draft_factory, scheduler):
    first = await file_store.put_draft(draft_factory("d1", data={"a": {"x": 1}}))
    scheduler.advance(60.0)
    second = await file_store.put_draft(draft_factory("d1", data={"a": {"x": 2}}))

    assert (first.version, second.version) == (1, 2)
    assert second.updated_at - first.updated_at == timedelta(seconds=60)
    assert second.created_at == first.created_at

    loaded = await file_store.get_draft("d1")
    assert loaded.data == {"a": {"x": 2}}
    assert loaded.version == 2


@pytest.mark.asyncio
async def test_round_trip_keeps_reason_and_step(file_store, draft_factory):
    draft = draft_factory("d1", data={"s": {"v": [1, 2]}}, current_step=4)
    draft.save_reason = SaveReason.MANUAL_SAVE
    await file_store.put_draft(draft)

    loaded = await file_store.get_draft("d1")
    assert loaded.current_step == 4
    assert loaded.save_reason is SaveReason.MANUAL_SAVE


@pytest.mark.asyncio
async def test_list_filters_by_user(file_store, draft_factory):
    await file_store.put_draft(draft_factory("d1"))
    await file_store.put_draft(draft_factory("d2", user_id="user-2"))

    summaries = await file_store.list_drafts("user-1")

    assert [s.id for s in summaries] == ["d1"]
    assert summaries[0].version == 1


@pytest.mark.asyncio
async def test_list_on_missing_root(tmp_path, scheduler):
    from guidedflow.core.drafts import FileDraftStore

    store = FileDraftStore(tmp_path / "never-created", scheduler=scheduler)
    assert await store.list_drafts("user-1") == []


@pytest.mark.asyncio
async def test_delete(file_store, draft_factory):
    await file_store.put_draft(draft_factory("d1"))
    assert await file_store.delete_draft("d1") is True
    assert await file_store.delete_draft("d1") is False
    with pytest.raises(DraftNotFoundError):
        await file_store.get_draft("d1")


@pytest.mark.asyncio
async def test_corrupted_body_raises_recovery_corrupted(file_store, draft_factory):
    await file_store.put_draft(draft_factory("d1"))
    file_store.draft_path("d1").write_text("{not json", encoding="utf-8")

    with pytest.raises(RecoveryCorrupted) as exc_info:
        await file_store.get_draft("d1")
    assert exc_info.value.draft_id == "d1"


@pytest.mark.asyncio
async def test_unreadable_header_is_not_listed(file_store, draft_factory):
    await file_store.put_draft(draft_factory("d1"))
    (file_store.root / "junk.json").write_text("[]", encoding="utf-8")

    assert [s.id for s in await file_store.list_drafts("user-1")] == ["d1"]


@pytest.mark.asyncio
async def test_overwrite_over_corrupted_file(file_store, draft_factory):
    file_store.root.mkdir(parents=True)
    file_store.draft_path("d1").write_text("garbage", encoding="utf-8")

    stored = await file_store.put_draft(draft_factory("d1"))

    assert stored.version == 1
    raw = json.loads(file_store.draft_path("d1").read_text(encoding="utf-8"))
    assert raw["version"] == 1


def test_draft_ids_are_sanitized(file_store):
    assert file_store.draft_path("../etc/passwd").name == ".._etc_passwd.json"
    with pytest.raises(DraftNotFoundError):
        file_store.draft_path("..")


def test_from_dict_rejects_non_mapping_data():
    with pytest.raises(ValueError):
        SessionDraft.from_dict(
            {
                "id": "d1",
                "estimate_id": "e",
                "user_id": "u",
                "data": [],
                "created_at": "2024-01-01T00:00:00Z",
                "updated_at": "2024-01-01T00:00:00Z",
            }
        )


def test_timestamps_without_offset_are_utc():
    draft = SessionDraft.from_dict(
        {
            "id": "d1",
            "estimate_id": "e",
            "user_id": "u",
            "data": {},
            "created_at": "2024-01-01T00:00:00",
            "updated_at": "2024-01-01T06:30:00",
        }
    )
    assert draft.created_at == datetime(2024, 1, 1, tzinfo=UTC)
    assert draft.updated_at.tzinfo is not None


@pytest.mark.asyncio
async def test_recovery_fields_round_trip(file_store, draft_factory, scheduler):
    draft = draft_factory("d1", data={"a": {}})
    draft.recovery_attempts = 2
    draft.last_recovered_at = scheduler.now()
    await file_store.put_draft(draft)

    loaded = await file_store.get_draft("d1")
    [summary] = await file_store.list_drafts("user-1")

    assert loaded.recovery_attempts == 2
    assert loaded.last_recovered_at == scheduler.now()
    assert summary.recovery_attempts == 2
    assert summary.has_data is True


@pytest.mark.parametrize(
    "current_step, completed, percentage",
    [
        (1, (), 0),
        (2, ("a",), 25),
        (4, ("a", "b", "c"), 75),
        (99, ("a", "b", "c"), 75),
    ],
)
def test_calculate_progress(current_step, completed, percentage):
    progress = calculate_progress(current_step, ("a", "b", "c", "d"))
    assert progress.completed_steps == completed
    assert progress.percentage == percentage
    assert progress.total_steps == 4

"""Tests for snapshot merging."""

import pytest

from notesync.core.errors import FatalInput
from notesync.core.merge import is_empty, merge_snapshots, normalize_snapshot
from notesync.core.models import MergeStrategy
from tests.conftest import T0, T1, T2, T3, make_conversation, make_note, make_snapshot, make_tag

SECTIONS = ("notes", "tags", "ai_conversations", "deleted")


def _content(payload: dict) -> dict:
    return {section: payload[section] for section in SECTIONS}


class TestMergeNotes:
    def test_newer_remote_wins(self):
        local = make_snapshot(notes=[make_note("n1", content="old", updated_at=T1)])
        remote = make_snapshot(notes=[make_note("n1", content="new", updated_at=T2)])

        outcome = merge_snapshots(local, remote)

        assert outcome.payload["notes"]["n1"]["content"] == "new"
        assert outcome.updated == 1

    def test_older_remote_leaves_local_unchanged(self):
        local_note = make_note("n1", content="mine", updated_at=T2)
        local = make_snapshot(notes=[local_note])
        remote = make_snapshot(notes=[make_note("n1", content="stale", updated_at=T1)])

        outcome = merge_snapshots(local, remote)

        assert outcome.payload["notes"]["n1"] == local_note
        assert outcome.updated == 0
        assert not outcome.changed

    def test_tie_keeps_local(self):
        local = make_snapshot(notes=[make_note("n1", content="local", updated_at=T1)])
        remote = make_snapshot(notes=[make_note("n1", content="remote", updated_at=T1)])

        assert merge_snapshots(local, remote).payload["notes"]["n1"]["content"] == "local"

    def test_force_takes_remote_even_if_older(self):
        local = make_snapshot(notes=[make_note("n1", content="mine", updated_at=T2)])
        remote = make_snapshot(notes=[make_note("n1", content="theirs", updated_at=T1)])

        outcome = merge_snapshots(local, remote, strategy=MergeStrategy.FORCE)

        assert outcome.payload["notes"]["n1"]["content"] == "theirs"

    def test_local_only_notes_are_preserved(self):
        local = make_snapshot(notes=[make_note("mine")])
        remote = make_snapshot(notes=[make_note("theirs")])

        outcome = merge_snapshots(local, remote)

        assert set(outcome.payload["notes"]) == {"mine", "theirs"}
        assert outcome.added == 1

    def test_local_only_dropped_when_not_preserved(self):
        local = make_snapshot(notes=[make_note("mine"), make_note("shared")])
        remote = make_snapshot(notes=[make_note("shared")])

        outcome = merge_snapshots(local, remote, preserve_local_only=False)

        assert set(outcome.payload["notes"]) == {"shared"}
        assert outcome.deleted == 1

    def test_disjoint_edits_commute(self):
        a = make_snapshot(
            notes=[make_note("a1", updated_at=T1), make_note("shared", content="a", updated_at=T3)],
            tags=[make_tag("t1", "work")],
            conversations=[make_conversation("c1", "a1", {"id": "m1", "created_at": T1, "text": "hi"})],
        )
        b = make_snapshot(
            notes=[make_note("b1", updated_at=T2), make_note("shared", content="b", updated_at=T2)],
            tags=[make_tag("t2", "home")],
            conversations=[make_conversation("c2", "b1", {"id": "m2", "created_at": T2, "text": "yo"})],
        )

        ab = merge_snapshots(a, b).payload
        ba = merge_snapshots(b, a).payload

        assert _content(ab) == _content(ba)
        assert ab["notes"]["shared"]["content"] == "a"
        assert set(ab["notes"]) == {"a1", "b1", "shared"}

    def test_conflicts_reported_only_for_edits_since_last_sync(self):
        local = make_snapshot(notes=[make_note("n1", content="local", updated_at=T2)])
        remote = make_snapshot(notes=[make_note("n1", content="remote", updated_at=T3)])

        both_edited = merge_snapshots(local, remote, last_sync=T1)
        assert both_edited.conflicts == [
            {
                "entity": "note",
                "id": "n1",
                "winner": "remote",
                "local_updated_at": T2,
                "remote_updated_at": T3,
            }
        ]
        assert both_edited.conflicted == 1

        only_remote_edited = merge_snapshots(local, remote, last_sync=T2)
        assert only_remote_edited.conflicts == []
        assert only_remote_edited.conflicted == 0

    def test_revoked_share_survives_newer_local_edit(self):
        shared = {"is_shared": True, "remote_file_id": "f1", "share_link": "https://example.com/s/1"}
        revoked = {"is_shared": False, "remote_file_id": None, "share_link": None}
        local = make_snapshot(notes=[make_note("n1", content="edited", updated_at=T3, collaboration=shared)])
        remote = make_snapshot(notes=[make_note("n1", content="old", updated_at=T1, collaboration=revoked)])

        merged = merge_snapshots(local, remote).payload["notes"]["n1"]

        assert merged["content"] == "edited"
        assert merged["collaboration"]["is_shared"] is False
        assert merged["collaboration"]["remote_file_id"] is None


class TestMergeTags:
    def test_name_clash_is_skipped(self):
        local = make_snapshot(tags=[make_tag("t1", "work")])
        remote = make_snapshot(tags=[make_tag("t9", "work")])

        outcome = merge_snapshots(local, remote)

        assert set(outcome.payload["tags"]) == {"t1"}
        assert outcome.conflicted == 1
        assert outcome.conflicts[0]["existing_id"] == "t1"

    def test_force_overwrites_same_id(self):
        local = make_snapshot(tags=[make_tag("t1", "work")])
        remote = make_snapshot(tags=[make_tag("t1", "office")])

        assert merge_snapshots(local, remote).payload["tags"]["t1"]["name"] == "work"
        assert merge_snapshots(local, remote, strategy="force").payload["tags"]["t1"]["name"] == "office"


class TestMergeConversations:
    def test_messages_are_unioned_in_order(self):
        m1 = {"id": "m1", "created_at": T1, "text": "question"}
        m2 = {"id": "m2", "created_at": T2, "text": "answer"}
        m3 = {"id": "m3", "created_at": T3, "text": "follow-up"}
        local = make_snapshot(notes=[make_note("n1")], conversations=[make_conversation("c1", "n1", m1, m3)])
        remote = make_snapshot(notes=[make_note("n1")], conversations=[make_conversation("c1", "n1", m1, m2)])

        merged = merge_snapshots(local, remote).payload["ai_conversations"]["c1"]

        assert [m["id"] for m in merged["messages"]] == ["m1", "m2", "m3"]

    def test_conversation_for_missing_note_is_skipped(self):
        remote = make_snapshot(conversations=[make_conversation("c1", "ghost")])

        outcome = merge_snapshots(make_snapshot(), remote)

        assert outcome.payload["ai_conversations"] == {}
        assert outcome.added == 0


class TestTombstones:
    def test_remote_delete_removes_older_local_note(self):
        local = make_snapshot(notes=[make_note("n1", updated_at=T1)])
        remote = make_snapshot(deleted_notes={"n1": T2})

        outcome = merge_snapshots(local, remote)

        assert "n1" not in outcome.payload["notes"]
        assert outcome.payload["deleted"]["notes"] == {"n1": T2}
        assert outcome.deleted == 1

    def test_edit_after_delete_wins(self):
        local = make_snapshot(notes=[make_note("n1", content="revived", updated_at=T3)])
        remote = make_snapshot(deleted_notes={"n1": T2})

        outcome = merge_snapshots(local, remote)

        assert outcome.payload["notes"]["n1"]["content"] == "revived"
        assert "n1" not in outcome.payload["deleted"]["notes"]

    def test_local_delete_is_not_resurrected_by_remote(self):
        local = make_snapshot(deleted_notes={"n1": T2})
        remote = make_snapshot(notes=[make_note("n1", updated_at=T1)])

        outcome = merge_snapshots(local, remote)

        assert "n1" not in outcome.payload["notes"]
        assert outcome.added == 0

    def test_conversations_follow_deleted_note(self):
        local = make_snapshot(
            notes=[make_note("n1", updated_at=T1)],
            conversations=[make_conversation("c1", "n1")],
        )
        remote = make_snapshot(deleted_notes={"n1": T2})

        outcome = merge_snapshots(local, remote)

        assert outcome.payload["ai_conversations"] == {}
        assert outcome.deleted == 2

    def test_tombstones_apply_under_force(self):
        local = make_snapshot(notes=[make_note("n1", updated_at=T1)])
        remote = make_snapshot(deleted_notes={"n1": T2})

        outcome = merge_snapshots(local, remote, strategy=MergeStrategy.FORCE)

        assert "n1" not in outcome.payload["notes"]


class TestReplace:
    def test_replace_takes_remote_wholesale(self):
        local = make_snapshot(notes=[make_note("mine"), make_note("shared", content="local")])
        remote = make_snapshot(notes=[make_note("shared", content="remote"), make_note("theirs")])

        outcome = merge_snapshots(local, remote, strategy=MergeStrategy.REPLACE)

        assert set(outcome.payload["notes"]) == {"shared", "theirs"}
        assert outcome.payload["notes"]["shared"]["content"] == "remote"
        assert (outcome.added, outcome.updated, outcome.deleted) == (1, 1, 1)


class TestNormalize:
    def test_legacy_list_sections(self):
        legacy = {
            "notes": [make_note("n1")],
            "tags": [make_tag("t1", "work")],
            "ai_conversations": [make_conversation("c1", "n1")],
        }

        normalized = normalize_snapshot(legacy)

        assert normalized["format"] == 2
        assert set(normalized["notes"]) == {"n1"}
        assert normalized["deleted"] == {"notes": {}, "ai_conversations": {}}

    def test_legacy_single_exchange_conversation(self):
        legacy = {
            "ai_conversations": [
                {"id": "c1", "note_id": None, "created_at": T0, "user_message": "q", "ai_response": "a"}
            ]
        }

        messages = normalize_snapshot(legacy)["ai_conversations"]["c1"]["messages"]

        assert len(messages) == 2

    def test_unknown_format_rejected(self):
        with pytest.raises(FatalInput):
            normalize_snapshot({"format": 99})

    def test_entity_without_id_rejected(self):
        with pytest.raises(FatalInput):
            normalize_snapshot({"notes": [{"title": "no id"}]})

    def test_bad_section_type_rejected(self):
        with pytest.raises(FatalInput):
            normalize_snapshot({"notes": "nope"})

    def test_is_empty(self):
        assert is_empty(make_snapshot(deleted_notes={"n1": T1}))
        assert not is_empty(make_snapshot(tags=[make_tag("t1", "work")]))

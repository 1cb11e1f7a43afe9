"""Tests for version groups and replacement chains."""

from datetime import timedelta

import pytest

from hls_ingest.errors import InvalidStateTransition, NotFound
from hls_ingest.queue.models import utcnow
from hls_ingest.versions import VersionManager


@pytest.fixture
def versions(store):
    return VersionManager(store)


def _create(versions, replaces=None, name="clip.mp4", tenant="acme"):
    return versions.create_version(name, f"temp-uploads/{name}", tenant,
                                   uploaded_by="u1", replaces_video_id=replaces)


class TestCreateVersion:
    def test_first_version_starts_group(self, versions):
        original = _create(versions)
        assert original.version_group_id == original.id
        assert original.version_number == 1
        assert original.is_active_version is True
        assert original.replaces_video_id is None

    def test_replacement_chain(self, versions, store):
        """O <- V1 <- V2: one group, numbered 1..3, only V2 active."""
        original = _create(versions, name="o.mp4")
        v1 = _create(versions, replaces=original.id, name="v1.mp4")
        v2 = _create(versions, replaces=v1.id, name="v2.mp4")

        group = versions.list_versions(original.id)
        assert [v.id for v in group] == [original.id, v1.id, v2.id]
        assert [v.version_number for v in group] == [1, 2, 3]
        assert [v.is_active_version for v in group] == [False, False, True]
        assert {v.version_group_id for v in group} == {original.id}
        assert v2.replaces_video_id == v1.id

        assert [v.id for v in versions.get_chain(v2.id)] == [original.id, v1.id, v2.id]

    def test_backfills_missing_group(self, versions, store):
        """Rows without a group id get one when first replaced."""
        original = _create(versions)
        store.conn.execute("UPDATE videos SET version_group_id = NULL WHERE id = ?", (original.id,))

        v1 = _create(versions, replaces=original.id)

        assert store.require(original.id).version_group_id == original.id
        assert v1.version_group_id == original.id

    def test_replacing_superseded_version_rejected(self, versions):
        original = _create(versions)
        _create(versions, replaces=original.id)

        with pytest.raises(InvalidStateTransition):
            _create(versions, replaces=original.id)

    def test_replace_unknown(self, versions):
        with pytest.raises(NotFound):
            _create(versions, replaces="does-not-exist")

    def test_replace_deleted_rejected(self, versions, store):
        original = _create(versions)
        store.mark_failed(original.id, None, "boom")
        store.soft_delete(original.id, None, utcnow(), utcnow())

        with pytest.raises(InvalidStateTransition):
            _create(versions, replaces=original.id)

    def test_replace_other_tenant_rejected(self, versions):
        original = _create(versions, tenant="acme")
        with pytest.raises(InvalidStateTransition):
            _create(versions, replaces=original.id, tenant="globex")

    def test_filename_required(self, versions):
        with pytest.raises(ValueError):
            versions.create_version("", "temp-uploads/x.mp4", "acme")

    def test_new_version_is_queued(self, versions, queue):
        original = _create(versions)
        v1 = _create(versions, replaces=original.id)
        assert queue.status(v1.id).processing_state == "Queued"
        assert queue.status(v1.id).queue_position == 1


class TestListAndChain:
    def test_list_versions_unknown_group(self, versions):
        with pytest.raises(NotFound):
            versions.list_versions("nope")

    def test_list_versions_tenant_filter(self, versions):
        original = _create(versions)
        with pytest.raises(NotFound):
            versions.list_versions(original.id, tenant="globex")

    def test_chain_cycle_detected(self, versions, store):
        a = _create(versions, name="a.mp4")
        b = _create(versions, replaces=a.id, name="b.mp4")
        store.conn.execute("UPDATE videos SET replaces_video_id = ? WHERE id = ?", (b.id, a.id))

        with pytest.raises(InvalidStateTransition):
            versions.get_chain(b.id)
        with pytest.raises(InvalidStateTransition):
            _create(versions, replaces=b.id)

    def test_live_listing_shows_active_versions_only(self, versions, store):
        original = _create(versions)
        v1 = _create(versions, replaces=original.id)
        assert [v.id for v in store.list_live("acme")] == [v1.id]


class TestDeletingVersions:
    """The active flag follows soft delete and restore of the newest version."""

    def _lineage(self, versions, store):
        original = _create(versions, name="o.mp4")
        v1 = _create(versions, replaces=original.id, name="v1.mp4")
        for video in (original, v1):
            store.mark_failed(video.id, None, "done")
        return original, v1

    def test_deleting_latest_promotes_predecessor(self, versions, store):
        original, v1 = self._lineage(versions, store)
        store.soft_delete(v1.id, None, utcnow(), utcnow() + timedelta(days=3))

        assert [v.id for v in store.list_live("acme")] == [original.id]
        assert store.require(original.id).is_active_version is True

        # The lineage can be versioned again from the surviving predecessor
        v2 = _create(versions, replaces=original.id, name="v2.mp4")
        assert v2.version_group_id == original.id
        assert [v.id for v in store.list_live("acme")] == [v2.id]

    def test_deleting_older_version_keeps_head(self, versions, store):
        original, v1 = self._lineage(versions, store)
        store.soft_delete(original.id, None, utcnow(), utcnow() + timedelta(days=3))

        assert [v.id for v in store.list_live("acme")] == [v1.id]

    def test_restore_takes_flag_back(self, versions, store):
        original, v1 = self._lineage(versions, store)
        store.soft_delete(v1.id, None, utcnow(), utcnow() + timedelta(days=3))

        store.restore(v1.id, utcnow())

        assert store.require(v1.id).is_active_version is True
        assert store.require(original.id).is_active_version is False
        assert [v.id for v in store.list_live("acme")] == [v1.id]

    def test_restore_after_new_version_stays_superseded(self, versions, store):
        original, v1 = self._lineage(versions, store)
        store.soft_delete(v1.id, None, utcnow(), utcnow() + timedelta(days=3))
        v2 = _create(versions, replaces=original.id, name="v2.mp4")

        store.restore(v1.id, utcnow())

        assert store.require(v1.id).is_active_version is False
        assert [v.id for v in store.list_live("acme")] == [v2.id]

    def test_skips_deleted_middle_version(self, versions, store):
        original, v1 = self._lineage(versions, store)
        v2 = _create(versions, replaces=v1.id, name="v2.mp4")
        store.mark_failed(v2.id, None, "done")
        store.soft_delete(v1.id, None, utcnow(), utcnow() + timedelta(days=3))
        store.soft_delete(v2.id, None, utcnow(), utcnow() + timedelta(days=3))

        assert [v.id for v in store.list_live("acme")] == [original.id]

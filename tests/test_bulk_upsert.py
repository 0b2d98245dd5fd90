"""Tests for the chunked bulk upsert."""

import pytest
from datetime import datetime
from unittest.mock import MagicMock, patch
from sqlalchemy.exc import IntegrityError

from pingtone.models import RoutePartition, UcmUser
from pingtone.services.bulk_upsert import bulk_upsert

KEY = ("ucm_cluster_id", "name")


def _partition(cluster_id, name, usage="General"):
    return {
        "ucm_cluster_id": cluster_id,
        "name": name,
        "uuid": None,
        "data": {"name": name},
        "partition_usage": usage,
    }


class TestBulkUpsert:
    """Tests for bulk_upsert."""

    def test_inserts_rows(self, db, cluster):
        written = bulk_upsert(db, RoutePartition, [_partition(cluster.id, "A"), _partition(cluster.id, "B")], KEY)

        assert written == 2
        rows = db.query(RoutePartition).order_by(RoutePartition.name).all()
        assert [r.name for r in rows] == ["A", "B"]
        assert all(r.created_at == r.updated_at for r in rows)

    def test_rerun_is_idempotent(self, db, session_factory, cluster):
        """Test that re-upserting identical data only refreshes updated_at."""
        first = datetime(2024, 1, 1, 8, 0, 0)
        second = datetime(2024, 1, 2, 8, 0, 0)
        rows = [_partition(cluster.id, "A"), _partition(cluster.id, "B")]

        with patch("pingtone.services.bulk_upsert.datetime") as mock_datetime:
            mock_datetime.utcnow.return_value = first
            bulk_upsert(db, RoutePartition, rows, KEY)
            mock_datetime.utcnow.return_value = second
            bulk_upsert(db, RoutePartition, rows, KEY)

        check = session_factory()
        try:
            stored = check.query(RoutePartition).all()
            assert len(stored) == 2
            assert all(r.created_at == first for r in stored)
            assert all(r.updated_at == second for r in stored)
        finally:
            check.close()

    def test_updates_changed_columns(self, db, session_factory, cluster):
        bulk_upsert(db, RoutePartition, [_partition(cluster.id, "A", usage="General")], KEY)
        bulk_upsert(db, RoutePartition, [_partition(cluster.id, "A", usage="Intercom")], KEY)

        check = session_factory()
        try:
            stored = check.query(RoutePartition).one()
            assert stored.partition_usage == "Intercom"
        finally:
            check.close()

    def test_duplicate_keys_in_input_last_wins(self, db, cluster):
        written = bulk_upsert(db, RoutePartition, [
            _partition(cluster.id, "A", usage="first"),
            _partition(cluster.id, "A", usage="second"),
        ], KEY)

        assert written == 1
        assert db.query(RoutePartition).one().partition_usage == "second"

    def test_same_name_in_other_cluster_is_separate(self, db, cluster):
        from pingtone.models import UcmCluster
        other = UcmCluster(name="Branch", hostname="h", username="u", password_encrypted="p", schema_version="14.0")
        db.add(other)
        db.commit()

        bulk_upsert(db, RoutePartition, [_partition(cluster.id, "A"), _partition(other.id, "A")], KEY)

        assert db.query(RoutePartition).count() == 2

    def test_chunks(self, db, cluster):
        rows = [
            {"ucm_cluster_id": cluster.id, "name": None, "uuid": f"u{i}", "data": {}, "userid": f"user{i}",
             "first_name": None, "last_name": None, "email": None}
            for i in range(5)
        ]
        with patch.object(db, "commit", wraps=db.commit) as commit:
            written = bulk_upsert(db, UcmUser, rows, ("ucm_cluster_id", "uuid"), chunk_size=2)

        assert written == 5
        assert commit.call_count == 3
        assert db.query(UcmUser).count() == 5

    def test_failed_chunk_keeps_earlier_chunks(self, db, session_factory, cluster):
        """Test that chunks are independent: a failing chunk does not undo prior ones."""
        rows = [_partition(cluster.id, "A"), _partition(cluster.id, "B"), _partition(None, "C")]

        with pytest.raises(IntegrityError):
            bulk_upsert(db, RoutePartition, rows, KEY, chunk_size=2)

        check = session_factory()
        try:
            assert sorted(r.name for r in check.query(RoutePartition).all()) == ["A", "B"]
        finally:
            check.close()

    def test_empty_input(self, db):
        assert bulk_upsert(db, RoutePartition, [], KEY) == 0

    def test_unsupported_dialect(self):
        db = MagicMock()
        db.get_bind.return_value.dialect.name = "oracle"
        with pytest.raises(ValueError, match="not supported"):
            bulk_upsert(db, RoutePartition, [_partition(1, "A")], KEY)

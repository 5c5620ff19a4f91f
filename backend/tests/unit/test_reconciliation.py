"""
Reconciliation Unit Tests
"""

import pytest

from services.migration.reconciliation import reconcile

pytestmark = pytest.mark.unit


class TestReconcile:
    """Test failed = exported - imported."""

    def test_failed_is_exported_minus_imported(self):
        result = reconcile({
            "exported_post_ids": {"p1", "p2", "p3"},
            "imported_post_ids": {"p1", "p3"},
            "exported_follower_ids": {"f1"},
            "imported_follower_ids": {"f1"},
        })

        assert result.categories["posts"].failed == {"p2"}
        assert result.categories["followers"].failed == set()
        assert result.failed_ids == {"p2"}
        assert result.exported_ids == {"p1", "p2", "p3", "f1"}
        assert result.imported_ids == {"p1", "p3", "f1"}
        assert not result.has_anomalies

    def test_failed_never_overlaps_imported(self):
        result = reconcile({
            "exported_group_ids": {"g1", "g2"},
            "imported_group_ids": {"g2"},
        })

        entry = result.categories["groups"]
        assert entry.failed | entry.imported == entry.exported
        assert not entry.failed & entry.imported

    def test_every_category_is_reported(self):
        result = reconcile({})

        assert set(result.categories) == {
            "posts", "profile", "followers", "followings", "groups", "permissions", "apps", "secrets",
        }
        assert result.failed_ids == set()

    def test_imported_without_export_is_an_anomaly(self):
        result = reconcile({
            "exported_app_ids": {"a1"},
            "imported_app_ids": {"a1", "a9"},
        })

        assert result.categories["apps"].anomalies == {"a9"}
        assert result.categories["apps"].failed == set()
        assert result.has_anomalies

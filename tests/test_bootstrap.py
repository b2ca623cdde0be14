"""Tests for startup wiring."""

from fabric_inventory.bootstrap import build_inventory
from fabric_inventory.search import SearchTier
from fabric_inventory.storage import LocalBlobStorage
from fabric_inventory.vision import CloudVisionComparator


class TestBuildInventory:
    """End-to-end wiring with in-memory SQLite and local storage."""

    def test_create_upload_search(self, monkeypatch, tmp_path, red_square_png):
        monkeypatch.setenv("DISABLE_S3", "true")
        inventory = build_inventory("sqlite://", upload_dir=str(tmp_path), vision=CloudVisionComparator())

        assert isinstance(inventory.storage, LocalBlobStorage)
        assert not inventory.vision.is_available()

        with inventory.unit_of_work() as uow:
            item = uow.stock.create({"product": "Silk A", "quantity": 12}, "alice")
            uow.stock.upload_image(item.id, red_square_png, "alice")

        with inventory.unit_of_work() as uow:
            results = uow.search.search_by_image(red_square_png)
            summary = uow.analytics.summary_for_stock(item.id)

        assert [r.stock.product for r in results] == ["Silk A"]
        assert results[0].tier == SearchTier.HASH
        assert summary.image_uploads == 1
        assert inventory.ledger.stats()["total_actions"] == 2

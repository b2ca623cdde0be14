"""Tests for stock and shade mutations."""

import os

import pytest

from fabric_inventory.errors import DuplicateNameError, ImageDecodeError, NotFoundError
from fabric_inventory.fingerprint import compute_fingerprint
from fabric_inventory.models import StockAction, StockItem
from fabric_inventory.stock import StockService


@pytest.fixture
def velvet(stock_service):
    return stock_service.create({
        "product": "Velvet C",
        "category": "Velvet",
        "quantity": 40,
        "cost": "12.5",
        "price": 20,
        "shades": [
            {"color_name": "Ruby", "color": "#9b111e", "quantity": 10, "length": 25},
            {"color_name": "Navy", "quantity": 5},
        ],
    }, "alice")


def stored_files(storage):
    return os.listdir(os.path.join(storage.root, "stock"))


class TestCreate:
    """Tests for creating stock items."""

    def test_sequential_stock_codes(self, stock_service):
        first = stock_service.create({"product": "Cotton Blend"})
        second = stock_service.create({"product": "Wool Mix"})
        assert first.stock_id == "FH001"
        assert second.stock_id == "FH002"

    def test_custom_prefix(self, db_session, ledger):
        service = StockService(db_session, ledger, id_prefix="TX")
        assert service.create({"product": "Denim"}).stock_id == "TX001"

    def test_values_coerced(self, velvet):
        assert velvet.cost == 12.5
        assert velvet.price == 20.0
        assert velvet.quantity == 40

    def test_shade_defaults(self, velvet):
        navy = velvet.shades[1]
        assert navy.color == "#000000"
        assert navy.unit == "pcs"
        assert navy.length_unit == "meters"

    def test_duplicate_name_rejected(self, stock_service, db_session, ledger):
        stock_service.create({"product": "Cotton Blend"})
        with pytest.raises(DuplicateNameError):
            stock_service.create({"product": "cotton blend"})

        assert db_session.query(StockItem).count() == 1
        assert ledger.all()["total"] == 1

    def test_product_required(self, stock_service, ledger):
        with pytest.raises(ValueError):
            stock_service.create({"product": "  "})
        assert ledger.all()["total"] == 0

    def test_shade_color_name_required(self, stock_service, db_session):
        with pytest.raises(ValueError):
            stock_service.create({"product": "Satin", "shades": [{"quantity": 3}]})
        assert db_session.query(StockItem).count() == 0

    def test_ledger_description(self, velvet, ledger):
        entry = ledger.by_stock(velvet.id)[0]
        assert entry.description == "Created stock: Velvet C (FH001) with 2 shades"
        assert len(entry.new_data["shades"]) == 2


class TestQueries:
    """Tests for read operations."""

    def test_get_missing(self, stock_service):
        with pytest.raises(NotFoundError, match="Stock with ID 99 not found"):
            stock_service.get(99)

    def test_search(self, stock_service, velvet):
        stock_service.create({"product": "Silk A", "category": "Silk"})
        assert [i.product for i in stock_service.search(name="velv")] == ["Velvet C"]
        assert [i.product for i in stock_service.search(category="SILK")] == ["Silk A"]
        assert len(stock_service.search(stock_code="FH")) == 2

    def test_low_stock(self, stock_service, velvet):
        stock_service.create({"product": "Silk A", "quantity": 3})
        assert [i.product for i in stock_service.low_stock(10)] == ["Silk A"]

    def test_list_all_newest_first(self, stock_service, velvet):
        silk = stock_service.create({"product": "Silk A"})
        assert stock_service.list_all()[0].id == silk.id


class TestUpdate:
    """Tests for field updates and shade synchronisation."""

    def test_field_change_described(self, stock_service, velvet, ledger):
        stock_service.update(velvet.id, {"quantity": 35, "price": 22}, "bob")
        entry = ledger.by_stock(velvet.id)[0]
        assert entry.action == StockAction.UPDATE
        assert "quantity: 40 → 35 (-5)" in entry.description
        assert "price: 20.0 → 22.0" in entry.description
        assert entry.old_data["quantity"] == 40
        assert entry.new_data["quantity"] == 35

    def test_no_changes(self, stock_service, velvet, ledger):
        stock_service.update(velvet.id, {"quantity": 40})
        assert ledger.by_stock(velvet.id)[0].description == "Updated Velvet C (no changes detected)"

    def test_shade_sync(self, stock_service, velvet, ledger):
        ruby, navy = velvet.shades
        stock_service.update(velvet.id, {"shades": [
            {"id": ruby.id, "quantity": 8},
            {"color_name": "Emerald", "quantity": 3},
        ]})

        item = stock_service.get(velvet.id)
        assert [s.color_name for s in item.shades] == ["Ruby", "Emerald"]
        assert item.shades[0].quantity == 8

        description = ledger.by_stock(velvet.id)[0].description
        assert "Ruby: quantity: 10 → 8 (-2)" in description
        assert "New shade: Emerald (3)" in description
        assert "Deleted shade: Navy" in description

    def test_unknown_shade_id_rejected(self, stock_service, velvet, ledger):
        with pytest.raises(NotFoundError):
            stock_service.update(velvet.id, {"quantity": 1, "shades": [{"id": 999, "quantity": 1}]})
        assert stock_service.get(velvet.id).quantity == 40
        assert len(ledger.by_stock(velvet.id)) == 1

    def test_rename_onto_existing_rejected(self, stock_service, velvet):
        stock_service.create({"product": "Silk A"})
        with pytest.raises(DuplicateNameError):
            stock_service.update(velvet.id, {"product": "SILK A"})

    def test_rename_case_only(self, stock_service, velvet):
        assert stock_service.update(velvet.id, {"product": "VELVET C"}).product == "VELVET C"

    def test_shade_without_color_name_leaves_nothing_pending(self, stock_service, velvet, ledger):
        with pytest.raises(ValueError):
            stock_service.update(velvet.id, {"quantity": 1, "shades": [{"quantity": 3}]})

        stock_service.adjust(velvet.id, 5)

        assert stock_service.get(velvet.id).quantity == 45
        assert [e.action for e in ledger.by_stock(velvet.id)] == [StockAction.ADJUST, StockAction.CREATE]
        assert ledger.by_stock(velvet.id)[0].old_data["quantity"] == 40

    def test_blank_product_rejected(self, stock_service, velvet, ledger):
        with pytest.raises(ValueError):
            stock_service.update(velvet.id, {"product": "   "})
        assert stock_service.get(velvet.id).product == "Velvet C"
        assert len(ledger.by_stock(velvet.id)) == 1

    def test_rename_is_stripped_before_duplicate_check(self, stock_service, velvet):
        stock_service.create({"product": "Cotton Blend"})
        with pytest.raises(DuplicateNameError):
            stock_service.update(velvet.id, {"product": "Cotton Blend "})
        assert stock_service.update(velvet.id, {"product": " Velvet Deluxe "}).product == "Velvet Deluxe"


class TestAdjust:
    """Tests for quantity adjustments."""

    def test_decrement(self, stock_service, velvet, ledger):
        stock_service.adjust(velvet.id, -15, "bob", "Sold to retailer")
        assert stock_service.get(velvet.id).quantity == 25
        assert ledger.by_stock(velvet.id)[0].description == (
            "Stock DECREMENT: Velvet C | 15 units | From: 40 → To: 25 | Notes: Sold to retailer"
        )

    def test_increment_without_notes(self, stock_service, velvet, ledger):
        stock_service.adjust(velvet.id, 10)
        description = ledger.by_stock(velvet.id)[0].description
        assert description.startswith("Stock INCREMENT")
        assert description.endswith("Notes: No notes provided")

    def test_zero_delta_rejected(self, stock_service, velvet, ledger):
        with pytest.raises(ValueError):
            stock_service.adjust(velvet.id, 0)
        assert len(ledger.by_stock(velvet.id)) == 1

    def test_missing_item(self, stock_service):
        with pytest.raises(NotFoundError):
            stock_service.adjust(42, 1)


class TestRemove:
    """Tests for deleting stock items."""

    def test_removes_item_shades_and_image(self, stock_service, velvet, storage, red_square_png, db_session):
        stock_service.upload_image(velvet.id, red_square_png)
        stock_service.remove(velvet.id, "alice")

        assert db_session.query(StockItem).count() == 0
        assert stored_files(storage) == []

    def test_ledger_keeps_old_snapshot(self, stock_service, velvet, ledger):
        stock_service.remove(velvet.id)
        entry = ledger.by_stock(velvet.id)[0]
        assert entry.action == StockAction.DELETE
        assert entry.new_data is None
        assert entry.old_data["product"] == "Velvet C"
        assert entry.description == "DELETED: Velvet C (FH001) and 2 associated shades"


class TestUploadImage:
    """Tests for product image upload and indexing."""

    def test_stores_and_fingerprints(self, stock_service, velvet, storage, red_square_png):
        item = stock_service.upload_image(velvet.id, red_square_png, "alice")
        assert item.image_hash == compute_fingerprint(red_square_png)
        assert storage.read(item.image_path) == red_square_png

    def test_replacing_deletes_old_blob(self, stock_service, velvet, storage, red_square_png, blue_circle_png, ledger):
        first_url = stock_service.upload_image(velvet.id, red_square_png).image_path
        item = stock_service.upload_image(velvet.id, blue_circle_png)

        assert stored_files(storage) == [os.path.basename(item.image_path)]

        entry = ledger.by_stock(velvet.id)[0]
        assert entry.action == StockAction.IMAGE_UPLOAD
        assert entry.old_data["image_path"] == first_url
        assert entry.new_data["image_path"] == item.image_path

    def test_invalid_image_stores_nothing(self, stock_service, velvet, storage, ledger):
        with pytest.raises(ImageDecodeError):
            stock_service.upload_image(velvet.id, b"not an image")
        assert stored_files(storage) == []
        assert stock_service.get(velvet.id).image_hash is None
        assert len(ledger.by_stock(velvet.id)) == 1

    def test_requires_storage(self, db_session, ledger, red_square_png):
        service = StockService(db_session, ledger)
        item = service.create({"product": "Tulle"})
        with pytest.raises(RuntimeError):
            service.upload_image(item.id, red_square_png)


class TestShades:
    """Tests for single-shade mutations."""

    def test_add_shade(self, stock_service, velvet, ledger):
        shade = stock_service.add_shade(velvet.id, {"color_name": "Gold", "quantity": 7}, "bob")
        assert shade.id is not None
        entry = ledger.by_stock(velvet.id)[0]
        assert entry.new_data["color_name"] == "Gold"

    def test_update_shade(self, stock_service, velvet, ledger):
        ruby = velvet.shades[0]
        stock_service.update_shade(ruby.id, {"quantity": 4})
        entry = ledger.by_stock(velvet.id)[0]
        assert entry.old_data["quantity"] == 10
        assert entry.new_data["quantity"] == 4
        assert entry.description == "Updated shade Ruby for stock Velvet C: quantity: 10 → 4 (-6)"

    def test_remove_shade(self, stock_service, velvet):
        navy = velvet.shades[1]
        stock_service.remove_shade(navy.id)
        assert [s.color_name for s in stock_service.get(velvet.id).shades] == ["Ruby"]
        with pytest.raises(NotFoundError):
            stock_service.get_shade(navy.id)

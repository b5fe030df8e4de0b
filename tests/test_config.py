"""Tests for store settings and pricing helpers."""

from config import StoreSettings
from pricing import compute_shipping, compute_tax, compute_total, round_money, subtotal_of
from schemas import OrderItem


class TestStoreSettings:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("TAX_RATE", "0.2")
        monkeypatch.setenv("TAX_ENABLED", "no")
        monkeypatch.setenv("FREE_SHIPPING_THRESHOLD", "")
        monkeypatch.setenv("CURRENCY", "eur")
        settings = StoreSettings.from_env()
        assert settings.tax_rate == 0.2
        assert settings.tax_enabled is False
        assert settings.free_shipping_threshold is None
        assert settings.currency == "EUR"

    def test_merged_overlays_document(self):
        merged = StoreSettings().merged({
            "currency": "gbp",
            "tax": {"enabled": False, "rate": 0.2},
            "shipping": {"flatRate": 7.5, "freeShippingThreshold": None, "expressRate": 20},
        })
        assert merged.currency == "GBP"
        assert merged.tax_enabled is False
        assert merged.tax_rate == 0.2
        assert merged.shipping_flat_rate == 7.5
        assert merged.free_shipping_threshold is None
        assert merged.express_shipping_rate == 20

    def test_merged_without_document(self):
        settings = StoreSettings()
        assert settings.merged(None) is settings
        assert settings.merged({}) is settings

    def test_merged_leaves_unset_fields(self):
        merged = StoreSettings(shipping_flat_rate=3).merged({"tax": {"rate": 0.05}})
        assert merged.shipping_flat_rate == 3
        assert merged.tax_rate == 0.05


class TestPricing:
    def test_round_half_up(self):
        assert round_money(0.005) == 0.01
        assert round_money(2.675) == 2.68
        assert round_money(1.004) == 1.0

    def test_subtotal(self):
        items = [
            OrderItem(product_id="p1", name="Cup", sku="A", quantity=3, price=0.1),
            OrderItem(product_id="p2", name="Pot", sku="B", quantity=1, price=19.99),
        ]
        assert subtotal_of(items) == 20.29

    def test_tax_on_discounted_amount(self):
        settings = StoreSettings(tax_rate=0.1)
        assert compute_tax(20, 5, settings) == 1.5
        assert compute_tax(20, 25, settings) == 0

    def test_shipping(self):
        settings = StoreSettings(shipping_flat_rate=5, free_shipping_threshold=50, express_shipping_rate=15)
        assert compute_shipping(49.99, 0, "standard", settings) == 5
        assert compute_shipping(50, 0, "standard", settings) == 0
        assert compute_shipping(60, 20, "standard", settings) == 5
        assert compute_shipping(500, 0, "express", settings) == 15

    def test_no_free_shipping_threshold(self):
        settings = StoreSettings(free_shipping_threshold=None)
        assert compute_shipping(1000, 0, "standard", settings) == settings.shipping_flat_rate

    def test_total(self):
        assert compute_total(20, 1.5, 5, 5) == 21.5

"""
Unit tests for store parsing, sanitizing and validation.
"""

import json

import pytest

from storefront_ingest.errors import ConfigurationError
from storefront_ingest.stores import (
    Store,
    is_valid_domain,
    list_shops,
    parse_stores,
    preview_stores,
    sanitize_domain,
    select_stores,
    validate_store,
)


class TestSanitizeDomain:
    @pytest.mark.parametrize("raw, expected", [
        ("acme.myshopify.com", "acme.myshopify.com"),
        ("  https://Acme.myshopify.com/admin/orders?x=1 ", "acme.myshopify.com"),
        ('"acme.myshopify.com"', "acme.myshopify.com"),
        ("'http://acme.myshopify.com'", "acme.myshopify.com"),
        ("", ""),
        (None, ""),
    ])
    def test_sanitize(self, raw, expected):
        assert sanitize_domain(raw) == expected

    def test_is_valid_domain(self):
        assert is_valid_domain("acme.myshopify.com")
        assert not is_valid_domain("acme")
        assert not is_valid_domain("acme shop.com")
        assert not is_valid_domain("")


class TestParseStores:
    def test_parses_array(self):
        raw = json.dumps([
            {"domain": "https://a.myshopify.com/", "token": "shpat_a"},
            {"domain": "b.myshopify.com", "token": " shpat_b "},
        ])

        stores = parse_stores(raw)

        assert stores == [
            Store("a.myshopify.com", "shpat_a"),
            Store("b.myshopify.com", "shpat_b"),
        ]

    def test_parses_double_encoded_array(self):
        inner = json.dumps([{"domain": "a.myshopify.com", "token": "shpat_a"}])
        assert parse_stores(json.dumps(inner)) == [Store("a.myshopify.com", "shpat_a")]

    @pytest.mark.parametrize("raw", ["", None, "not json", '{"domain": "a.com"}', '"just a string"'])
    def test_unparsable_config_is_empty(self, raw):
        assert parse_stores(raw) == []


class TestValidateStore:
    def test_valid(self):
        store = Store("a.myshopify.com", "shpat_123")
        assert validate_store(store) is store

    def test_bad_token(self):
        with pytest.raises(ConfigurationError) as exc_info:
            validate_store(Store("a.myshopify.com", "abc"))
        assert "token" in str(exc_info.value)

    def test_bad_domain(self):
        with pytest.raises(ConfigurationError):
            validate_store(Store("not a domain", "shpat_123"))

    def test_repr_hides_token(self):
        assert "shpat_secret" not in repr(Store("a.myshopify.com", "shpat_secret"))


class TestSelection:
    stores = [Store("a.myshopify.com", "shpat_a"), Store("b.myshopify.com", "shpat_b")]

    def test_select_all_without_target(self):
        assert select_stores(self.stores, None) == self.stores
        assert select_stores(self.stores, "") == self.stores

    def test_select_single_target(self):
        assert select_stores(self.stores, "https://B.myshopify.com") == [self.stores[1]]

    def test_unknown_target(self):
        assert select_stores(self.stores, "c.myshopify.com") == []

    def test_listing_and_preview(self):
        shops = list_shops(self.stores)
        assert shops[0] == {"id": 1, "handle": "a", "domain": "a.myshopify.com"}

        preview = preview_stores([Store("a.myshopify.com", "bad")])
        assert preview[0]["valid"] is True
        assert preview[0]["token_ok"] is False

"""Tests for phone normalization and sender identity."""

import pytest

from folioflow.core.models import Role
from folioflow.services.identity import (
    IdentityResolver,
    last_significant_digits,
    normalize_phone,
    same_phone,
)


class TestNormalizePhone:
    """Canonical +<cc><national> form."""

    @pytest.mark.parametrize(
        "raw",
        [
            "whatsapp:+525512345678",
            "whatsapp:+5215512345678",
            "+52 55 1234 5678",
            "+52 (55) 1234-5678",
            "5512345678",
            "005215512345678",
        ],
    )
    def test_variants_share_one_canonical_form(self, raw):
        assert normalize_phone(raw) == "+525512345678"

    def test_other_country_codes_untouched(self):
        assert normalize_phone("whatsapp:+14155550123") == "+14155550123"

    def test_empty_identifier(self):
        assert normalize_phone("") == ""
        assert normalize_phone(None) == ""
        assert normalize_phone("whatsapp:") == ""

    def test_default_country_code_override(self):
        assert normalize_phone("4155550123", default_country_code="1") == "+14155550123"

    def test_same_phone_compares_last_ten_digits(self):
        assert same_phone("+5215512345678", "55 1234 5678")
        assert not same_phone("+525512345678", "+525512345679")
        assert not same_phone("", "")
        assert last_significant_digits("whatsapp:+5215512345678") == "5512345678"


class TestIdentityResolver:
    """Lookup of actors by inbound identifier."""

    @pytest.mark.parametrize(
        "raw",
        [
            "whatsapp:+522225550101",
            "whatsapp:+5212225550101",
            "+52 222 555 0101",
            "2225550101",
        ],
    )
    def test_every_form_resolves_to_the_same_actor(self, actors, directory, raw):
        actor = IdentityResolver(directory).resolve(raw)
        assert actor is not None
        assert actor.user_id == actors["ga"].user_id
        assert actor.role is Role.SITE_MANAGER
        assert actor.org_unit == "PUE"
        assert actor.canonical_phone == "+522225550101"

    def test_directory_number_with_mobile_digit(self, actors, directory):
        # Stored as "5215550000002"
        actor = IdentityResolver(directory).resolve("whatsapp:+525550000002")
        assert actor.user_id == actors["gg"].user_id
        assert actor.role is Role.GENERAL_MANAGER

    def test_director_has_no_org_unit(self, actors):
        assert actors["zp"].role.is_top_tier
        assert actors["zp"].org_unit is None

    def test_unknown_number_is_none(self, directory):
        assert IdentityResolver(directory).resolve("whatsapp:+525599999999") is None

    def test_short_number_is_none(self, directory):
        assert IdentityResolver(directory).resolve("12345") is None

    def test_inactive_actor_is_not_resolved(self, directory):
        directory.add_actor("+525511110000", "Former GA", Role.SITE_MANAGER, org_unit_code="PUE", active=False)
        assert IdentityResolver(directory).resolve("whatsapp:+525511110000") is None

from decimal import Decimal

import pytest

from marketplace_engine.core.exceptions import ConflictError, NotFoundError, ValidationError
from marketplace_engine.services.listings import ListingService

DIMENSIONS = {"width": 50, "depth": 50, "height": 80}


@pytest.fixture
def listings(store):
    return ListingService(store)


def test_create_listing_is_pending_with_suggested_price(store, listings):
    listing = listings.create_listing("designer-1", "Chairs", DIMENSIONS, name="Lounge chair")

    assert listing.status == "pending"
    assert listing.category == "chairs"
    # 0.2 m3 * 150000 * 1.2
    assert listing.base_price == Decimal("36000")
    assert listing.selling_price == Decimal("43200")
    assert store.data["listings"][listing.id] == listing


def test_create_listing_reuses_submission_product_id(listings):
    listing = listings.create_listing("designer-1", "chairs", DIMENSIONS, product_id="prod-1")
    assert listing.id == "prod-1"


def test_price_update_preserves_markup_and_records_history(store, listings):
    listing = listings.create_listing("designer-1", "chairs", DIMENSIONS)
    updated = listings.update_price(listing.id, "40000", changed_by="admin-7")

    assert updated.base_price == Decimal("40000")
    assert updated.selling_price == Decimal("48000")

    [entry] = store.data["pricing_history"]
    assert entry.old_base_price == Decimal("36000")
    assert entry.new_selling_price == Decimal("48000")
    assert entry.changed_by == "admin-7"


def test_explicit_selling_price_override(listings):
    listing = listings.create_listing("designer-1", "chairs", DIMENSIONS)
    updated = listings.update_price(listing.id, "40000", selling_price="41000")
    assert updated.selling_price == Decimal("41000")


def test_approval_requires_selling_at_least_base(listings):
    listing = listings.create_listing("designer-1", "chairs", DIMENSIONS)
    listings.update_price(listing.id, "40000", auto_apply_markup=False, selling_price="39000")

    with pytest.raises(ValidationError):
        listings.approve_listing(listing.id)


def test_zero_markup_listing_can_be_approved(listings):
    listing = listings.create_listing("designer-1", "chairs", DIMENSIONS)
    listings.update_price(listing.id, "40000", selling_price="40000")
    assert listings.approve_listing(listing.id).status == "approved"


def test_prices_frozen_after_approval(listings):
    listing = listings.create_listing("designer-1", "chairs", DIMENSIONS)
    listings.approve_listing(listing.id)

    with pytest.raises(ConflictError):
        listings.update_price(listing.id, "50000")
    with pytest.raises(ConflictError):
        listings.reject_listing(listing.id)


def test_approve_is_idempotent(listings):
    listing = listings.create_listing("designer-1", "chairs", DIMENSIONS)
    first = listings.approve_listing(listing.id)
    assert listings.approve_listing(listing.id) == first


def test_reject_pending_listing(listings):
    listing = listings.create_listing("designer-1", "chairs", DIMENSIONS)
    assert listings.reject_listing(listing.id).status == "rejected"


def test_unknown_listing(listings):
    with pytest.raises(NotFoundError):
        listings.approve_listing("missing")

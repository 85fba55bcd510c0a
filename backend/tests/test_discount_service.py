"""
Discount evaluation, amount calculation and usage ledger tests.
"""

from datetime import timedelta

import pytest

from shopledger.models import Discount, DiscountUsage
from shopledger.services import discount_service
from shopledger.services.discount_service import CartLine, DiscountCommand, DiscountError
from shopledger.time_utils import utcnow
from shopledger.validation import NotFoundError, ValidationError


def _create(store, **overrides):
    fields = dict(
        code="save10",
        title="Ten percent off",
        type="percentage",
        value=1000,
        minimum_amount=5000,
        status="active",
    )
    fields.update(overrides)
    return discount_service.create_discount(store.id, DiscountCommand(**fields))


class TestCalculation:
    """Pure amount calculation."""

    def test_percentage_rounds_half_up(self):
        discount = Discount(type="percentage", value=1250)
        assert discount_service.calculate_discount_amount(discount, 1004) == 126
        assert discount_service.calculate_discount_amount(discount, 1003) == 125

    def test_percentage_respects_maximum_amount(self):
        discount = Discount(type="percentage", value=5000, maximum_amount=2000)
        assert discount_service.calculate_discount_amount(discount, 10000) == 2000

    def test_fixed_amount_never_exceeds_order(self):
        discount = Discount(type="fixed_amount", value=3000)
        assert discount_service.calculate_discount_amount(discount, 10000) == 3000
        assert discount_service.calculate_discount_amount(discount, 1200) == 1200

    def test_free_shipping_equals_shipping(self):
        discount = Discount(type="free_shipping", value=0)
        assert discount_service.calculate_discount_amount(discount, 10000, shipping_amount=15000) == 10000
        assert discount_service.calculate_discount_amount(discount, 20000, shipping_amount=15000) == 15000

    def test_buy_x_get_y_gives_cheapest_units(self):
        discount = Discount(type="buy_x_get_y", value=0, prerequisite_quantity=2, entitled_quantity=1)
        items = [CartLine(product_id=1, price=1000, quantity=2), CartLine(product_id=2, price=500, quantity=1)]
        assert discount_service.calculate_discount_amount(discount, 2500, items=items) == 500

    def test_buy_x_get_y_respects_eligible_products(self):
        discount = Discount(type="buy_x_get_y", value=0, prerequisite_quantity=2, entitled_quantity=1)
        items = [CartLine(product_id=1, price=1000, quantity=2), CartLine(product_id=2, price=500, quantity=1)]
        amount = discount_service.calculate_discount_amount(
            discount, 2500, items=items, eligible_product_ids={1}
        )
        assert amount == 1000

    def test_buy_x_get_y_below_prerequisite(self):
        discount = Discount(type="buy_x_get_y", value=0, prerequisite_quantity=3, entitled_quantity=1)
        items = [CartLine(product_id=1, price=1000, quantity=2)]
        assert discount_service.calculate_discount_amount(discount, 2000, items=items) == 0


class TestComputeStatus:

    def test_manual_statuses_are_sticky(self):
        now = utcnow()
        for status in ("draft", "disabled"):
            discount = Discount(status=status, ends_at=now - timedelta(days=1))
            assert discount_service.compute_status(discount, now) == status

    def test_window_derivation(self):
        now = utcnow()
        assert discount_service.compute_status(
            Discount(status="active", starts_at=now + timedelta(days=1)), now
        ) == "scheduled"
        assert discount_service.compute_status(
            Discount(status="active", ends_at=now - timedelta(seconds=1)), now
        ) == "expired"
        assert discount_service.compute_status(
            Discount(status="scheduled", starts_at=now - timedelta(days=1)), now
        ) == "active"


class TestValidateDiscount:

    def test_save10_meets_minimum(self, db_session, store):
        _create(store)

        result = discount_service.validate_discount(store.id, "SAVE10", order_amount=10000)

        assert result.valid
        assert discount_service.calculate_discount_amount(result.discount, 10000) == 1000

    def test_save10_below_minimum(self, db_session, store):
        _create(store)

        result = discount_service.validate_discount(store.id, "save10", order_amount=4000)

        assert not result.valid
        assert result.error == "Minimum order amount of 50.00 required"

    def test_unknown_code(self, db_session, store):
        result = discount_service.validate_discount(store.id, "NOPE")
        assert not result.valid
        assert result.error == "Invalid discount code"

    def test_empty_code(self, db_session, store):
        result = discount_service.validate_discount(store.id, "  ")
        assert result.error == "Please enter a discount code"

    def test_code_is_scoped_to_store(self, db_session, store, other_store):
        _create(store)
        result = discount_service.validate_discount(other_store.id, "SAVE10", order_amount=10000)
        assert result.error == "Invalid discount code"

    def test_expired_discount_persists_status(self, db_session, store):
        now = utcnow()
        discount = _create(store, starts_at=now - timedelta(days=10), ends_at=now - timedelta(days=1))
        assert discount.status == "expired"

        result = discount_service.validate_discount(store.id, "SAVE10", order_amount=10000)
        assert result.error == "Discount has expired"

    def test_scheduled_discount(self, db_session, store):
        now = utcnow()
        _create(store, starts_at=now + timedelta(days=1))

        result = discount_service.validate_discount(store.id, "SAVE10", order_amount=10000)
        assert result.error == "Discount has not started yet"

    def test_draft_discount_is_invalid(self, db_session, store):
        _create(store, status="draft")
        result = discount_service.validate_discount(store.id, "SAVE10", order_amount=10000)
        assert result.error == "Invalid discount code"


class TestUsageLedger:

    def test_usage_limit_and_counter_match_ledger(self, db_session, store):
        discount = _create(store, usage_limit=3, minimum_amount=None)

        for _ in range(3):
            assert discount_service.apply_discount(store.id, "SAVE10", None, None, 10000) == 1000

        with pytest.raises(DiscountError, match="usage limit reached"):
            discount_service.apply_discount(store.id, "SAVE10", None, None, 10000)

        result = discount_service.check_usage_consistency(discount.id)
        assert result["current_usage"] == 3
        assert result["ledger_count"] == 3
        assert result["consistent"] is True
        assert len(discount_service.list_usages(discount.id)) == 3

    def test_record_usage_rechecks_limit(self, db_session, store):
        discount = _create(store, usage_limit=1, minimum_amount=None)
        discount_service.record_usage(discount.id, None, None, 500)

        with pytest.raises(DiscountError):
            discount_service.record_usage(discount.id, None, None, 500)

        assert db_session.query(DiscountUsage).filter_by(discount_id=discount.id).count() == 1

    def test_once_per_customer(self, db_session, store, customer):
        _create(store, once_per_customer=True, minimum_amount=None)
        discount_service.apply_discount(store.id, "SAVE10", None, customer.id, 10000)

        with pytest.raises(DiscountError, match="once per customer"):
            discount_service.apply_discount(store.id, "SAVE10", None, customer.id, 10000)

        # Guests are not limited per customer
        assert discount_service.apply_discount(store.id, "SAVE10", None, None, 10000) == 1000

    def test_usage_limit_per_customer(self, db_session, store, customer):
        _create(store, usage_limit_per_customer=2, minimum_amount=None)
        discount_service.apply_discount(store.id, "SAVE10", None, customer.id, 10000)
        discount_service.apply_discount(store.id, "SAVE10", None, customer.id, 10000)

        result = discount_service.validate_discount(store.id, "SAVE10", customer_id=customer.id)
        assert result.error == "You have already used this discount"

    def test_inconsistent_counter_is_reported(self, db_session, store):
        discount = _create(store, minimum_amount=None)
        discount_service.record_usage(discount.id, None, None, 100)

        discount.current_usage = 5
        db_session.commit()

        result = discount_service.check_usage_consistency(discount.id)
        assert result["consistent"] is False
        assert result["ledger_count"] == 1


class TestAdminOperations:

    def test_code_is_normalized_and_unique(self, db_session, store):
        discount = _create(store, code=" summer ")
        assert discount.code == "SUMMER"

        with pytest.raises(DiscountError, match="already exists"):
            _create(store, code="SUMMER")

    def test_invalid_percentage_rejected(self, db_session, store):
        with pytest.raises(ValidationError):
            _create(store, value=10001)

    def test_products_scope_requires_known_products(self, db_session, store, product):
        with pytest.raises(NotFoundError):
            _create(store, applies_to="products", product_ids=[product.id, 999999])

        discount = _create(store, applies_to="products", product_ids=[product.id])
        assert discount_service.eligible_product_ids_for(discount) == {product.id}

    def test_toggle_round_trip(self, db_session, store):
        discount = _create(store)
        assert discount_service.toggle_discount(discount.id, store.id).status == "disabled"
        assert discount_service.toggle_discount(discount.id, store.id).status == "active"

    def test_duplicate_is_draft_with_fresh_code(self, db_session, store):
        discount = _create(store, minimum_amount=None)
        discount_service.record_usage(discount.id, None, None, 100)

        copy = discount_service.duplicate_discount(discount.id, store.id)

        assert copy.code.startswith("SAVE10_COPY_")
        assert copy.title == "Ten percent off (Copy)"
        assert copy.status == "draft"
        assert copy.current_usage == 0

    def test_used_discount_cannot_be_deleted(self, db_session, store):
        discount = _create(store, minimum_amount=None)
        discount_service.record_usage(discount.id, None, None, 100)

        with pytest.raises(DiscountError):
            discount_service.delete_discount(discount.id, store.id)

    def test_unused_discount_is_deleted(self, db_session, store):
        discount = _create(store)
        discount_id = discount.id
        discount_service.delete_discount(discount_id, store.id)

        with pytest.raises(NotFoundError):
            discount_service.get_discount(discount_id, store.id)

    def test_usage_limit_cannot_drop_below_usage(self, db_session, store):
        discount = _create(store, minimum_amount=None)
        discount_service.record_usage(discount.id, None, None, 100)
        discount_service.record_usage(discount.id, None, None, 100)

        cmd = DiscountCommand(code="SAVE10", title="Ten percent off", type="percentage", value=1000,
                              usage_limit=1, status="active")
        with pytest.raises(DiscountError, match="below current usage"):
            discount_service.update_discount(discount.id, store.id, cmd)

    def test_update_changes_value_and_scope(self, db_session, store, product):
        discount = _create(store)

        cmd = DiscountCommand(code="SAVE20", title="Twenty percent off", type="percentage", value=2000,
                              applies_to="products", product_ids=[product.id], minimum_amount=None,
                              status="active")
        updated = discount_service.update_discount(discount.id, store.id, cmd)

        assert updated.code == "SAVE20"
        assert updated.value == 2000
        assert updated.minimum_amount is None
        assert discount_service.eligible_product_ids_for(updated) == {product.id}

        assert not discount_service.validate_discount(store.id, "SAVE10", order_amount=10000).valid
        result = discount_service.validate_discount(store.id, "save20", order_amount=3000)
        assert result.valid
        assert result.discount.id == discount.id
        assert discount_service.calculate_discount_amount(result.discount, 3000) == 600

    def test_other_store_cannot_touch_discount(self, db_session, store, other_store):
        discount = _create(store)
        with pytest.raises(NotFoundError):
            discount_service.toggle_discount(discount.id, other_store.id)

    def test_list_filters_by_status_and_search(self, db_session, store):
        _create(store, code="SAVE10")
        _create(store, code="WINTER", title="Winter sale", status="draft")

        assert [d.code for d in discount_service.list_discounts(store.id, status="draft")] == ["WINTER"]
        assert [d.code for d in discount_service.list_discounts(store.id, search="save")] == ["SAVE10"]

    def test_available_discounts(self, db_session, store):
        _create(store)
        _create(store, code="BIG", type="fixed_amount", value=2000, minimum_amount=20000)

        available = discount_service.available_discounts(store.id, 10000)
        assert [(d["code"], d["discount_amount"]) for d in available] == [("SAVE10", 1000)]

    def test_refresh_statuses_persists_drift(self, db_session, store):
        discount = _create(store)
        discount.ends_at = utcnow() - timedelta(minutes=1)
        db_session.commit()

        assert discount_service.refresh_statuses(store.id) == 1
        assert discount_service.get_discount(discount.id).status == "expired"

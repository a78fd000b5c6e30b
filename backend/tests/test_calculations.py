import unittest
from datetime import date, datetime
from decimal import Decimal

from wholesale_erp.services.inventory_service import stock_status
from wholesale_erp.services.pricing_rules import (
    QuantityRange,
    date_range_contains,
    date_ranges_overlap,
    find_conflicts,
    quantity_ranges_overlap,
    validate_bracket_item,
)
from wholesale_erp.services.receiving_service import allocate_landed_costs
from wholesale_erp.services.reporting_service import add_months, linear_trend, period_bounds
from wholesale_erp.services.sales_service import discount_for, payment_status_for
from wholesale_erp.validation import ValidationError


class RangeRuleTests(unittest.TestCase):
    def test_quantity_ranges_are_inclusive(self):
        self.assertTrue(quantity_ranges_overlap(1, 10, 10, 20))
        self.assertFalse(quantity_ranges_overlap(1, 9, 10, None))
        self.assertTrue(quantity_ranges_overlap(50, None, 100, None))

    def test_date_ranges_are_half_open(self):
        jan, feb, mar = datetime(2024, 1, 1), datetime(2024, 2, 1), datetime(2024, 3, 1)
        self.assertFalse(date_ranges_overlap(jan, feb, feb, mar))
        self.assertTrue(date_ranges_overlap(jan, None, feb, mar))
        self.assertTrue(date_range_contains(jan, feb, jan))
        self.assertFalse(date_range_contains(jan, feb, feb))

    def test_conflicts_require_the_same_scope(self):
        ranges = [
            QuantityRange(1, 10, scope="regular", key="a"),
            QuantityRange(5, None, scope="wholesale", key="b"),
            QuantityRange(10, 20, scope="regular", key="c"),
        ]
        conflicts = find_conflicts(ranges)
        self.assertEqual([(a.key, b.key) for a, b in conflicts], [("a", "c")])

    def test_bracket_item_from_csv_row(self):
        clean, errors = validate_bracket_item(
            {"min_quantity": "10", "max_quantity": "", "price": "12.345", "price_type": "wholesale"},
            money_as_decimal=True,
        )
        self.assertFalse(errors)
        self.assertEqual(clean["price_cents"], 1235)
        self.assertIsNone(clean["max_quantity"])

    def test_bracket_item_rejects_fractional_quantity(self):
        _clean, errors = validate_bracket_item(
            {"min_quantity": "1.5", "price_cents": 100, "price_type": "regular"}
        )
        self.assertIn("min_quantity", errors.errors)


class LandedCostTests(unittest.TestCase):
    def test_costs_follow_line_value(self):
        lines = [
            {"received_quantity": 10, "cost_price_cents": 1000},
            {"received_quantity": 10, "cost_price_cents": 500},
        ]
        costs = [{"amount_cents": 3000}, {"amount_cents": 600, "is_deduction": True}]
        self.assertEqual(allocate_landed_costs(lines, costs), [1160, 580])

    def test_zero_cost_lines_split_by_quantity(self):
        lines = [
            {"received_quantity": 3, "cost_price_cents": 0},
            {"received_quantity": 1, "cost_price_cents": 0},
        ]
        self.assertEqual(allocate_landed_costs(lines, [{"amount_cents": 400}]), [100, 100])

    def test_deductions_never_push_below_zero(self):
        lines = [{"received_quantity": 1, "cost_price_cents": 100}]
        self.assertEqual(allocate_landed_costs(lines, [{"amount_cents": 500, "is_deduction": True}]), [0])

    def test_no_costs_keeps_cost_price(self):
        lines = [{"received_quantity": 7, "cost_price_cents": 333}]
        self.assertEqual(allocate_landed_costs(lines, []), [333])


class MoneyRuleTests(unittest.TestCase):
    def test_discount_rounds_half_up(self):
        self.assertEqual(discount_for(1005, Decimal("10")), 101)
        self.assertEqual(discount_for(1000, Decimal("0")), 0)

    def test_payment_status(self):
        self.assertEqual(payment_status_for(1000, 0), "unpaid")
        self.assertEqual(payment_status_for(1000, 400), "partial")
        self.assertEqual(payment_status_for(1000, 1000), "paid")
        self.assertEqual(payment_status_for(0, 0), "paid")

    def test_stock_status(self):
        self.assertEqual(stock_status(5, 5), "low")
        self.assertEqual(stock_status(15, 5), "normal")
        self.assertEqual(stock_status(16, 5), "overstocked")


class PeriodMathTests(unittest.TestCase):
    def test_add_months_wraps_years(self):
        self.assertEqual(add_months(date(2024, 11, 20), 3), date(2025, 2, 1))
        self.assertEqual(add_months(date(2024, 1, 1), -1), date(2023, 12, 1))

    def test_period_bounds(self):
        period_date, start, end = period_bounds("monthly", date(2024, 2, 14))
        self.assertEqual(period_date, date(2024, 2, 1))
        self.assertEqual((start, end), (datetime(2024, 2, 1), datetime(2024, 3, 1)))
        with self.assertRaises(ValidationError):
            period_bounds("weekly", date(2024, 2, 14))

    def test_linear_trend(self):
        slope, intercept = linear_trend([2, 4, 6])
        self.assertAlmostEqual(slope, 2.0)
        self.assertAlmostEqual(intercept, 0.0)
        self.assertEqual(linear_trend([5]), (0.0, 5.0))


if __name__ == "__main__":
    unittest.main()

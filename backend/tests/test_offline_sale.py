import unittest
from dataclasses import replace
from datetime import datetime

from pharmaledger.services.offline_sale_service import (
    OfflineSaleItem,
    build_offline_sale,
    compute_integrity_digest,
    is_well_formed,
    record_from_payload,
    record_to_payload,
    verify_integrity,
)
from pharmaledger.validation import ValidationError


NOW = datetime(2024, 3, 5, 14, 30, 15, 123456)


class OfflineSaleRecorderTests(unittest.TestCase):
    def setUp(self):
        self.record = build_offline_sale(
            [
                {"product_id": "p-1", "quantity": 2, "unit_price_cents": 1250, "product_name": "Dipyrone 500mg"},
                {"product_id": "p-2", "quantity": 1, "unit_price_cents": 899,
                 "requires_prescription": True, "lots": [{"lot_id": "lot-9", "quantity": 1}]},
            ],
            actor_id="cashier-1",
            client_id="register-3",
            now=NOW,
        )

    def test_build_computes_totals(self):
        self.assertEqual([i.subtotal_cents for i in self.record.items], [2500, 899])
        self.assertEqual(self.record.total_value_cents, 3399)
        self.assertEqual(self.record.items[1].lots, (("lot-9", 1),))
        self.assertTrue(is_well_formed(self.record))

    def test_timestamp_truncated_to_milliseconds(self):
        self.assertEqual(self.record.client_timestamp.microsecond, 123000)

    def test_fresh_ids(self):
        other = build_offline_sale(
            [{"product_id": "p-1", "quantity": 2, "unit_price_cents": 1250}], actor_id="cashier-1", now=NOW,
        )
        self.assertNotEqual(self.record.id, other.id)
        self.assertNotEqual(self.record.items[0].id, other.items[0].id)

    def test_digest_verifies(self):
        self.assertEqual(len(self.record.integrity_digest), 64)
        self.assertTrue(verify_integrity(self.record))

    def test_digest_is_deterministic(self):
        self.assertEqual(compute_integrity_digest(self.record), compute_integrity_digest(replace(self.record)))

    def test_mutating_any_field_breaks_the_digest(self):
        item = self.record.items[0]
        tampered = [
            replace(self.record, total_value_cents=1),
            replace(self.record, actor_id="someone-else"),
            replace(self.record, client_id="register-4"),
            replace(self.record, notes="edited"),
            replace(self.record, client_timestamp=datetime(2024, 3, 5, 14, 30, 16)),
            replace(self.record, items=(replace(item, quantity=3),) + self.record.items[1:]),
            replace(self.record, items=(replace(item, product_name="Other"),) + self.record.items[1:]),
            replace(self.record, items=self.record.items[:1]),
        ]
        for record in tampered:
            with self.subTest(record=record):
                self.assertFalse(verify_integrity(record))

    def test_missing_digest_never_verifies(self):
        self.assertFalse(verify_integrity(replace(self.record, integrity_digest="")))

    def test_non_hex_digest_never_verifies(self):
        self.assertFalse(verify_integrity(replace(self.record, integrity_digest="é" * 64)))

    def test_inconsistent_arithmetic_is_not_well_formed(self):
        bad_item = replace(self.record.items[0], subtotal_cents=1)
        self.assertFalse(is_well_formed(replace(self.record, items=(bad_item,) + self.record.items[1:])))
        self.assertFalse(is_well_formed(replace(self.record, total_value_cents=3400)))
        self.assertFalse(is_well_formed(replace(self.record, items=())))

    def test_duplicate_item_ids_are_not_well_formed(self):
        twin = replace(self.record.items[1], id=self.record.items[0].id)
        self.assertFalse(is_well_formed(replace(self.record, items=(self.record.items[0], twin))))

    def test_payload_survives_transport(self):
        payload = record_to_payload(self.record)
        self.assertEqual(payload["client_timestamp"], "2024-03-05T14:30:15.123Z")

        parsed = record_from_payload(payload)
        self.assertEqual(parsed, self.record)
        self.assertTrue(verify_integrity(parsed))

    def test_build_requires_price_and_actor(self):
        with self.assertRaises(ValidationError):
            build_offline_sale([{"product_id": "p-1", "quantity": 1}], actor_id="cashier-1")
        with self.assertRaises(ValidationError):
            build_offline_sale([{"product_id": "p-1", "quantity": 1, "unit_price_cents": 10}], actor_id="")
        with self.assertRaises(ValidationError):
            build_offline_sale([], actor_id="cashier-1")

    def test_malformed_payloads(self):
        good = record_to_payload(self.record)
        broken = [
            "not a record",
            {**good, "items": "nope"},
            {**good, "client_timestamp": "yesterday"},
            {**good, "client_timestamp": None},
            {**good, "id": ""},
            {**good, "total_value_cents": "12.5"},
            {**good, "items": [{"id": "x", "product_id": "p-1", "quantity": 1}]},
        ]
        for payload in broken:
            with self.subTest(payload=payload):
                with self.assertRaises(ValidationError):
                    record_from_payload(payload)

    def test_item_dict_shape(self):
        item = OfflineSaleItem(id="i", product_id="p", quantity=1, unit_price_cents=5, subtotal_cents=5)
        self.assertEqual(item.to_dict()["lots"], [])


if __name__ == "__main__":
    unittest.main()

import unittest
from datetime import datetime, timezone

from clients.couchbase import to_document_value
from clients.couchbase.store import build_where
from models.entities.couchbase.auctions import AuctionStatus


class BuildWhereTestCase(unittest.TestCase):
    def test_empty(self):
        self.assertEqual(("TRUE", {}), build_where([]))

    def test_named_parameters(self):
        predicate, params = build_where(
            [("status", "=", "active"), ("end_time", "<=", "2030-01-01T00:00:00.000000Z")]
        )
        self.assertEqual("`status` = $w0 AND `end_time` <= $w1", predicate)
        self.assertEqual({"w0": "active", "w1": "2030-01-01T00:00:00.000000Z"}, params)

    def test_in_null_and_id(self):
        predicate, params = build_where(
            [("status", "in", ("sold", "ended_no_sale")), ("owner_id", "!=", None), ("id", "!=", "k1")]
        )
        self.assertEqual("`status` IN $w0 AND `owner_id` IS NOT NULL AND META().id != $w2", predicate)
        self.assertEqual({"w0": ["sold", "ended_no_sale"], "w2": "k1"}, params)

    def test_rejects_injection(self):
        with self.assertRaises(ValueError):
            build_where([("status` = 1 OR `x", "=", 1)])


class DocumentValueTestCase(unittest.TestCase):
    def test_conversions(self):
        when = datetime(2030, 5, 1, 8, 30, tzinfo=timezone.utc)
        self.assertEqual("active", to_document_value(AuctionStatus.ACTIVE))
        self.assertEqual("2030-05-01T08:30:00.000000Z", to_document_value(when))
        self.assertEqual(["sold", "sold_buy_now"], to_document_value((AuctionStatus.SOLD, AuctionStatus.SOLD_BUY_NOW)))
        self.assertEqual(12.5, to_document_value(12.5))

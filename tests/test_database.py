from decimal import Decimal
from unittest.mock import MagicMock

import bson
import pytest
from bson.codec_options import CodecOptions, TypeRegistry

from database import DecimalCodec, MongoStore, _regex
from errors import InsufficientStock

OPTIONS = CodecOptions(type_registry=TypeRegistry([DecimalCodec()]))


def test_decimals_survive_bson():
    doc = {"total_amount": Decimal("54.00"), "items": [{"price": Decimal("27.00")}]}
    decoded = bson.decode(bson.encode(doc, codec_options=OPTIONS), codec_options=OPTIONS)
    assert decoded["total_amount"] == Decimal("54.00")
    assert isinstance(decoded["items"][0]["price"], Decimal)


def test_search_is_escaped_and_case_insensitive():
    assert _regex("a+b (x)") == {"$regex": r"a\+b\ \(x\)", "$options": "i"}


# ============================================================================
# Transactions
# ============================================================================

class TestMongoTransactions:

    @pytest.fixture
    def session(self):
        session = MagicMock()
        session.with_transaction.side_effect = lambda callback: callback(session)
        return session

    @pytest.fixture
    def mongo(self, session):
        db = MagicMock()
        db.client.start_session.return_value.__enter__.return_value = session
        return MongoStore(db)

    def test_callback_runs_through_with_transaction(self, mongo, session):
        seen = []
        result = mongo.run_in_transaction(lambda tx: seen.append(tx) or "done")
        assert result == "done"
        session.with_transaction.assert_called_once()
        assert isinstance(seen[0], MongoStore)
        assert seen[0]._session is session

    def test_domain_errors_propagate(self, mongo):
        def sold_out(tx):
            raise InsufficientStock("Last few: Only 2 available, but 3 requested")

        with pytest.raises(InsufficientStock):
            mongo.run_in_transaction(sold_out)

    def test_nested_call_reuses_the_session(self, mongo, session):
        inner = MongoStore(mongo.db, session=session)
        assert inner.run_in_transaction(lambda tx: tx) is inner
        mongo.db.client.start_session.assert_not_called()

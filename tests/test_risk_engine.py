"""
Tests for the risk rule engine

Covers each rule's threshold boundaries, score aggregation and the
UTC day grouping used by the velocity rule.
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

import risk_engine
from risk_engine import (
    HIGH_RISK_JURISDICTION,
    HIGH_VELOCITY,
    LARGE_TRANSACTION,
    ROUND_AMOUNT_PATTERN,
    UNKNOWN_RULE_DESCRIPTION,
    get_rule_description,
    utc_day,
)

BASE_DATE = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)


def txn(txn_id, amount, country=None, when=None):
    """Minimal transaction stand-in with the attributes the engine reads."""
    return SimpleNamespace(
        id=txn_id,
        amount=Decimal(str(amount)),
        counterparty_country=country,
        transaction_date=when or BASE_DATE,
    )


def spread(transactions):
    """Place each transaction on its own day so velocity never fires."""
    for offset, t in enumerate(transactions):
        t.transaction_date = BASE_DATE + timedelta(days=offset)
    return transactions


class TestEmptyInput:

    def test_no_transactions_scores_zero(self):
        result = risk_engine.score([])
        assert result.total_risk_score == 0
        assert result.triggered_rules == []
        assert result.flagged_transactions == []
        assert result.rule_checks == []

    def test_customer_id_is_echoed(self):
        assert risk_engine.score([], customer_id=7).customer_id == 7


class TestLargeTransactionRule:

    def test_threshold_is_exclusive(self):
        result = risk_engine.score(spread([txn(1, "10000.00"), txn(2, "10000.01")]))
        assert result.triggered_rules == [LARGE_TRANSACTION]
        assert result.flagged_transactions == [2]
        assert result.total_risk_score == 10

    def test_scores_per_transaction(self):
        result = risk_engine.score(spread([txn(1, 12500), txn(2, 30001), txn(3, 10999)]))
        assert result.rule_checks[0].risk_score == 30
        assert result.rule_checks[0].affected_transactions == [1, 2, 3]

    def test_float_amounts_are_compared_exactly(self):
        t = SimpleNamespace(id=1, amount=10000.1, counterparty_country=None, transaction_date=BASE_DATE)
        assert risk_engine.score([t]).triggered_rules == [LARGE_TRANSACTION]


class TestHighVelocityRule:

    def test_five_on_one_day_does_not_trigger(self):
        transactions = [txn(i, 100, when=BASE_DATE + timedelta(minutes=i)) for i in range(1, 6)]
        assert HIGH_VELOCITY not in risk_engine.score(transactions).triggered_rules

    def test_six_on_one_day_triggers(self):
        transactions = [txn(i, 100, when=BASE_DATE + timedelta(minutes=i)) for i in range(1, 7)]
        result = risk_engine.score(transactions)
        assert result.triggered_rules == [HIGH_VELOCITY]
        assert result.total_risk_score == 15
        assert result.flagged_transactions == [1, 2, 3, 4, 5, 6]

    def test_scores_per_busy_day(self):
        day_one = [txn(i, 100, when=BASE_DATE + timedelta(minutes=i)) for i in range(1, 7)]
        day_two = [txn(i, 100, when=BASE_DATE + timedelta(days=1, minutes=i)) for i in range(7, 13)]
        quiet = [txn(13, 100, when=BASE_DATE + timedelta(days=2))]
        result = risk_engine.score(day_one + day_two + quiet)
        assert result.total_risk_score == 30
        assert 13 not in result.flagged_transactions

    def test_days_are_grouped_in_utc(self):
        # 23:30 at UTC-5 is 04:30 UTC the next day
        eastern = timezone(timedelta(hours=-5))
        late = datetime(2025, 1, 15, 23, 30, tzinfo=eastern)
        assert utc_day(late).isoformat() == "2025-01-16"

    def test_naive_timestamps_are_taken_as_utc(self):
        assert utc_day(datetime(2025, 1, 15, 23, 59)).isoformat() == "2025-01-15"


class TestHighRiskJurisdictionRule:

    @pytest.mark.parametrize("country", ["Iran", "NORTH KOREA", "syria", " Cuba "])
    def test_listed_countries_trigger(self, country):
        result = risk_engine.score([txn(1, 100, country=country)])
        assert result.triggered_rules == [HIGH_RISK_JURISDICTION]
        assert result.total_risk_score == 25

    @pytest.mark.parametrize("country", ["Malta", "Cayman Islands", "", None])
    def test_other_countries_do_not_trigger(self, country):
        assert risk_engine.score([txn(1, 100, country=country)]).triggered_rules == []


class TestRoundAmountRule:

    def test_two_round_amounts_do_not_trigger(self):
        result = risk_engine.score(spread([txn(1, 5000), txn(2, 6000)]))
        assert result.triggered_rules == []

    def test_three_round_amounts_trigger_flat_score(self):
        result = risk_engine.score(spread([txn(1, 5000), txn(2, 6000), txn(3, 7000), txn(4, 8000)]))
        assert result.triggered_rules == [ROUND_AMOUNT_PATTERN]
        assert result.total_risk_score == 20
        assert result.flagged_transactions == [1, 2, 3, 4]

    def test_small_and_fractional_amounts_are_not_round(self):
        result = risk_engine.score(spread([txn(1, 4000), txn(2, "5000.50"), txn(3, 9500), txn(4, 5000)]))
        assert result.triggered_rules == []


class TestAggregation:

    def test_sample_business_owner_profile(self):
        # Six wires to Iran over two days, four of them round
        amounts = ["15000.00", "9500.00", "8000.00", "12000.00", "10000.00", "11500.00"]
        transactions = [
            txn(i + 1, amount, country="Iran", when=BASE_DATE + timedelta(days=i // 3, hours=i % 3))
            for i, amount in enumerate(amounts)
        ]
        result = risk_engine.score(transactions)

        assert result.triggered_rules == [LARGE_TRANSACTION, HIGH_RISK_JURISDICTION, ROUND_AMOUNT_PATTERN]
        assert result.total_risk_score == 30 + 150 + 20
        assert result.flagged_transactions == [1, 2, 3, 4, 5, 6]

    def test_flagged_transactions_are_deduplicated_and_sorted(self):
        transactions = spread([txn(9, 20000, country="Iran"), txn(3, 11000, country="Cuba")])
        result = risk_engine.score(transactions)
        assert result.flagged_transactions == [3, 9]
        assert result.total_risk_score == 20 + 50

    def test_alerts_do_not_change_the_score(self):
        transactions = spread([txn(1, 11000)])
        alerts = [SimpleNamespace(rule_name=HIGH_RISK_JURISDICTION, risk_score=25, transaction_id=1)]
        assert risk_engine.score(transactions, alerts).total_risk_score == 10

    def test_to_dict(self):
        data = risk_engine.score([txn(1, 11000)], customer_id=2).to_dict()
        assert data["customer_id"] == 2
        assert data["rule_checks"][0] == {
            "rule_name": LARGE_TRANSACTION,
            "description": "Transaction exceeds $10,000 threshold",
            "risk_score": 10,
            "affected_transactions": [1],
        }


class TestRuleDescriptions:

    def test_known_rule(self):
        assert get_rule_description(HIGH_VELOCITY) == "More than 5 transactions in a single day"

    def test_unknown_rule(self):
        assert get_rule_description("NOT_A_RULE") == UNKNOWN_RULE_DESCRIPTION

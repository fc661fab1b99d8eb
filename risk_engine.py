"""
Risk Rule Engine

Scores a customer's transaction history against a fixed rule set.
Every rule is evaluated independently and the scores of triggered rules
are summed. Scoring is deterministic and has no side effects; rules fired
here are never persisted as alerts.

Rules:
1. LARGE_TRANSACTION - amount above 10,000, 10 points per transaction
2. HIGH_VELOCITY - more than 5 transactions on one UTC day, 15 points per day
3. HIGH_RISK_JURISDICTION - embargoed counterparty country, 25 points per transaction
4. ROUND_AMOUNT_PATTERN - more than 2 round amounts of 5,000 or more, flat 20 points
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

logger = logging.getLogger(__name__)

LARGE_TRANSACTION = "LARGE_TRANSACTION"
HIGH_VELOCITY = "HIGH_VELOCITY"
HIGH_RISK_JURISDICTION = "HIGH_RISK_JURISDICTION"
ROUND_AMOUNT_PATTERN = "ROUND_AMOUNT_PATTERN"

LARGE_TRANSACTION_THRESHOLD = Decimal("10000")
LARGE_TRANSACTION_SCORE = 10

HIGH_VELOCITY_DAILY_LIMIT = 5
HIGH_VELOCITY_SCORE = 15

HIGH_RISK_COUNTRIES = frozenset({"IRAN", "NORTH KOREA", "SYRIA", "CUBA"})
HIGH_RISK_JURISDICTION_SCORE = 25

ROUND_AMOUNT_UNIT = Decimal("1000")
ROUND_AMOUNT_MINIMUM = Decimal("5000")
# Triggers on strictly more than this many round amounts
ROUND_AMOUNT_MIN_COUNT = 2
ROUND_AMOUNT_SCORE = 20

RULE_DESCRIPTIONS: Dict[str, str] = {
    LARGE_TRANSACTION: "Transaction exceeds $10,000 threshold",
    HIGH_VELOCITY: "More than 5 transactions in a single day",
    HIGH_RISK_JURISDICTION: "Transaction with high-risk jurisdiction",
    ROUND_AMOUNT_PATTERN: "Multiple transactions with round amounts (structuring indicator)",
}

UNKNOWN_RULE_DESCRIPTION = "Unknown rule"


def get_rule_description(rule_name: str) -> str:
    """Description for a rule name, or the unknown-rule sentinel"""
    return RULE_DESCRIPTIONS.get(rule_name, UNKNOWN_RULE_DESCRIPTION)


@dataclass
class RuleCheck:
    """Outcome of one triggered rule"""
    rule_name: str
    description: str
    risk_score: int
    affected_transactions: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'rule_name': self.rule_name,
            'description': self.description,
            'risk_score': self.risk_score,
            'affected_transactions': self.affected_transactions
        }


@dataclass
class RiskScoreResult:
    """Aggregate risk score for a set of transactions

    `flagged_transactions` is a deduplicated set, returned sorted ascending.
    """
    total_risk_score: int = 0
    triggered_rules: List[str] = field(default_factory=list)
    flagged_transactions: List[int] = field(default_factory=list)
    rule_checks: List[RuleCheck] = field(default_factory=list)
    customer_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'customer_id': self.customer_id,
            'total_risk_score': self.total_risk_score,
            'triggered_rules': self.triggered_rules,
            'flagged_transactions': self.flagged_transactions,
            'rule_checks': [check.to_dict() for check in self.rule_checks]
        }


def _as_decimal(amount: Any) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    # str() avoids binary float artifacts, e.g. 10000.1 -> Decimal('10000.1')
    return Decimal(str(amount))


def utc_day(timestamp: datetime) -> date:
    """UTC calendar day of a timestamp. Naive timestamps are taken as UTC."""
    if timestamp.tzinfo is None:
        return timestamp.date()
    return timestamp.astimezone(timezone.utc).date()


def _check_large_transactions(transactions: Sequence[Any]) -> Optional[RuleCheck]:
    matching = [t.id for t in transactions if _as_decimal(t.amount) > LARGE_TRANSACTION_THRESHOLD]
    if not matching:
        return None
    return RuleCheck(
        rule_name=LARGE_TRANSACTION,
        description=RULE_DESCRIPTIONS[LARGE_TRANSACTION],
        risk_score=LARGE_TRANSACTION_SCORE * len(matching),
        affected_transactions=matching
    )


def _check_high_velocity(transactions: Sequence[Any]) -> Optional[RuleCheck]:
    per_day = Counter(utc_day(t.transaction_date) for t in transactions)
    busy_days = {day for day, count in per_day.items() if count > HIGH_VELOCITY_DAILY_LIMIT}
    if not busy_days:
        return None
    return RuleCheck(
        rule_name=HIGH_VELOCITY,
        description=RULE_DESCRIPTIONS[HIGH_VELOCITY],
        risk_score=HIGH_VELOCITY_SCORE * len(busy_days),
        affected_transactions=[t.id for t in transactions if utc_day(t.transaction_date) in busy_days]
    )


def _check_high_risk_jurisdiction(transactions: Sequence[Any]) -> Optional[RuleCheck]:
    matching = [
        t.id for t in transactions
        if t.counterparty_country and t.counterparty_country.strip().upper() in HIGH_RISK_COUNTRIES
    ]
    if not matching:
        return None
    return RuleCheck(
        rule_name=HIGH_RISK_JURISDICTION,
        description=RULE_DESCRIPTIONS[HIGH_RISK_JURISDICTION],
        risk_score=HIGH_RISK_JURISDICTION_SCORE * len(matching),
        affected_transactions=matching
    )


def _is_round_amount(amount: Decimal) -> bool:
    return amount >= ROUND_AMOUNT_MINIMUM and amount % ROUND_AMOUNT_UNIT == 0


def _check_round_amounts(transactions: Sequence[Any]) -> Optional[RuleCheck]:
    matching = [t.id for t in transactions if _is_round_amount(_as_decimal(t.amount))]
    if len(matching) <= ROUND_AMOUNT_MIN_COUNT:
        return None
    return RuleCheck(
        rule_name=ROUND_AMOUNT_PATTERN,
        description=RULE_DESCRIPTIONS[ROUND_AMOUNT_PATTERN],
        risk_score=ROUND_AMOUNT_SCORE,
        affected_transactions=matching
    )


_RULES = (
    _check_large_transactions,
    _check_high_velocity,
    _check_high_risk_jurisdiction,
    _check_round_amounts,
)


def score(
    transactions: Iterable[Any],
    alerts: Optional[Iterable[Any]] = None,
    customer_id: Optional[int] = None
) -> RiskScoreResult:
    """Score a transaction set against every rule

    Args:
        transactions: Objects with `id`, `amount`, `transaction_date` and
            `counterparty_country` attributes
        alerts: Pre-computed alerts for the same customer. Accepted for
            context only; they are neither merged with nor deduplicated
            against the rules evaluated here.
        customer_id: Optional owner id echoed in the result

    Returns:
        RiskScoreResult; empty input yields a zero score
    """
    transactions = list(transactions)
    checks = [check for check in (rule(transactions) for rule in _RULES) if check is not None]

    flagged = set()
    for check in checks:
        flagged.update(check.affected_transactions)

    result = RiskScoreResult(
        total_risk_score=sum(check.risk_score for check in checks),
        triggered_rules=[check.rule_name for check in checks],
        flagged_transactions=sorted(flagged),
        rule_checks=checks,
        customer_id=customer_id
    )

    logger.debug(
        f"Scored {len(transactions)} transactions: score={result.total_risk_score}, "
        f"rules={result.triggered_rules}, flagged={len(result.flagged_transactions)}"
    )
    return result

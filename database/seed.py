#!/usr/bin/env python3
"""
Sample Data Loading for SARCheck

Loads a small development data set:
- Two customers (an import/export business owner and a crypto trader)
- Nine transactions, including a same-day burst of wires to Iran
- Nine pre-computed alerts

Seeding is skipped when the store already holds customers.

Usage:
    python -m database.seed [--config config.yaml] [--verbose]
"""

import argparse
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List

from database.models import RiskLevel, TransactionDirection
from database.sar_service import SarService
from database.storage import SarStorage

logger = logging.getLogger(__name__)


def _utc(value: str) -> datetime:
    return datetime.fromisoformat(value).replace(tzinfo=timezone.utc)


SAMPLE_CUSTOMERS: List[Dict[str, Any]] = [
    {
        "customer_id": "CUST-001",
        "name": "John Mitchell",
        "account_number": "ACC-7821-9034",
        "risk_level": RiskLevel.HIGH,
        "country_of_residence": "United States",
        "occupation": "Import/Export Business Owner",
        "account_open_date": _utc("2022-03-15T00:00:00"),
    },
    {
        "customer_id": "CUST-002",
        "name": "Sarah Chen",
        "account_number": "ACC-4562-1087",
        "risk_level": RiskLevel.MEDIUM,
        "country_of_residence": "Singapore",
        "occupation": "Cryptocurrency Trader",
        "account_open_date": _utc("2023-01-20T00:00:00"),
    },
]


def _wire(txn_id: str, amount: str, counterparty: str, when: str, description: str) -> Dict[str, Any]:
    return {
        "customer_id": "CUST-001",
        "transaction_id": txn_id,
        "amount": Decimal(amount),
        "currency": "USD",
        "transaction_type": "wire_transfer",
        "direction": TransactionDirection.OUTBOUND,
        "counterparty": counterparty,
        "counterparty_country": "Iran",
        "transaction_date": _utc(when),
        "description": description,
    }


def _crypto(txn_id: str, amount: str, direction: TransactionDirection, counterparty: str,
            country: str, when: str, description: str) -> Dict[str, Any]:
    return {
        "customer_id": "CUST-002",
        "transaction_id": txn_id,
        "amount": Decimal(amount),
        "currency": "USD",
        "transaction_type": "crypto_exchange",
        "direction": direction,
        "counterparty": counterparty,
        "counterparty_country": country,
        "transaction_date": _utc(when),
        "description": description,
    }


SAMPLE_TRANSACTIONS: List[Dict[str, Any]] = [
    _wire("TXN-001", "15000.00", "ABC Trading Ltd", "2025-01-15T10:30:00", "Payment for goods"),
    _wire("TXN-002", "9500.00", "XYZ Corp", "2025-01-15T14:20:00", "Trade settlement"),
    _wire("TXN-003", "8000.00", "Global Exports Inc", "2025-01-15T16:45:00", "Invoice payment"),
    _wire("TXN-004", "12000.00", "Mideast Trading", "2025-01-16T09:15:00", "Purchase order payment"),
    _wire("TXN-005", "10000.00", "Tehran Commodities", "2025-01-16T11:30:00", "Commodity purchase"),
    _wire("TXN-006", "11500.00", "Eastern Supplies", "2025-01-16T15:00:00", "Supply payment"),
    _crypto("TXN-101", "25000.00", TransactionDirection.INBOUND, "Crypto Exchange A", "Malta",
            "2025-02-01T08:00:00", "Bitcoin sale"),
    _crypto("TXN-102", "18000.00", TransactionDirection.OUTBOUND, "Crypto Exchange B", "Cayman Islands",
            "2025-02-01T10:30:00", "Ethereum purchase"),
    _crypto("TXN-103", "22000.00", TransactionDirection.INBOUND, "Crypto Exchange A", "Malta",
            "2025-02-01T13:45:00", "Altcoin sale"),
]


def _alert(txn_id: str, rule_name: str, description: str, score: int) -> Dict[str, Any]:
    return {
        "transaction_id": txn_id,
        "rule_name": rule_name,
        "rule_description": description,
        "risk_score": score,
    }


_LARGE = ("LARGE_TRANSACTION", "Transaction exceeds $10,000 threshold", 10)
_JURISDICTION = ("HIGH_RISK_JURISDICTION", "Transaction with high-risk jurisdiction", 25)
_ROUND = ("ROUND_AMOUNT_PATTERN", "Round amount transaction (possible structuring)", 20)

SAMPLE_ALERTS: List[Dict[str, Any]] = [
    _alert("TXN-001", *_LARGE),
    _alert("TXN-001", *_JURISDICTION),
    _alert("TXN-004", *_LARGE),
    _alert("TXN-004", *_JURISDICTION),
    _alert("TXN-005", *_ROUND),
    _alert("TXN-005", *_JURISDICTION),
    _alert("TXN-101", *_LARGE),
    _alert("TXN-102", *_LARGE),
    _alert("TXN-103", *_LARGE),
]


def seed_sample_data(storage: SarStorage) -> bool:
    """
    Load the sample data set into an empty store.

    Args:
        storage: Target storage

    Returns:
        True if data was loaded, False if the store already had customers
    """
    if storage.list_customers():
        logger.info("Sample data already present, skipping seed")
        return False

    logger.info("Seeding store with sample data...")
    result = SarService(storage).ingest(
        customers=SAMPLE_CUSTOMERS,
        transactions=SAMPLE_TRANSACTIONS,
        alerts=SAMPLE_ALERTS
    )
    logger.info(
        f"Seeded {result.customers_created} customers, {result.transactions_created} "
        f"transactions, {result.alerts_created} alerts"
    )
    return True


def main():
    from config_manager import ConfigManager
    from database.storage import create_storage_backend
    from logging_utils import configure_logging

    parser = argparse.ArgumentParser(description="Load sample data into the SARCheck store")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    args = parser.parse_args()

    config = ConfigManager(args.config)
    configure_logging(config.logging)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if config.storage.backend == "memory":
        logger.warning("storage.backend is 'memory'; seeded data will not outlive this process")

    backend = create_storage_backend(config)
    try:
        with backend.open() as storage:
            seed_sample_data(storage)
    finally:
        backend.close()


if __name__ == "__main__":
    main()

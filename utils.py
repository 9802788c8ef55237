#!/usr/bin/env python3
"""
Utility functions for AgriTrace backend
"""
import re
from datetime import date, datetime, timezone
from typing import Optional

from config import settings

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
TX_HASH_PATTERN = re.compile(r"^0x[a-fA-F0-9]{64}$")
BATCH_ID_PATTERN = re.compile(r"^[0-9]+$")


def is_valid_address(address: Optional[str]) -> bool:
    """
    Validate an EOA/contract address string (0x followed by 40 hex characters)
    """
    return isinstance(address, str) and bool(ADDRESS_PATTERN.match(address))


def is_same_address(a: Optional[str], b: Optional[str]) -> bool:
    """Case-insensitive address comparison; empty values never match."""
    if not a or not b:
        return False
    return a.lower() == b.lower()


def parse_batch_id(value) -> Optional[int]:
    """
    Parse a batch id given as int or decimal string.
    Returns None for anything that is not a non-negative integer.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, str) and BATCH_ID_PATTERN.match(value.strip()):
        return int(value.strip())
    return None


def parse_inr_amount(value) -> int:
    """Parse an optional whole-rupee amount; blanks and missing values are 0."""
    if value is None:
        return 0
    text = str(value).strip()
    if not text:
        return 0
    return int(text)


def date_to_epoch(value: date) -> int:
    """Midnight UTC of a calendar date as epoch seconds."""
    return int(datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp())


def is_valid_transaction_hash(tx_hash: str) -> bool:
    """
    Validate if a transaction hash is a valid EVM transaction hash
    """
    if not tx_hash:
        return False
    return bool(TX_HASH_PATTERN.match(tx_hash))


def generate_explorer_url(tx_hash: str) -> Optional[str]:
    """
    Generate explorer URL for a transaction hash
    Returns None if the transaction hash is invalid
    """
    if not is_valid_transaction_hash(tx_hash):
        return None

    return f"{settings.EXPLORER_TX_URL}/{tx_hash}"

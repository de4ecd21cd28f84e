"""CSV ledger import.

Rows go through normalize_row -> resolve_field -> coerce_date/coerce_amount
and are written one insert at a time, so a failing row never undoes the rows
before it. Every row yields a RowOutcome; ImportSummary tallies them.
"""

import csv
import io
import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from dateutil import parser as dtparser
from werkzeug.security import generate_password_hash

from .db import DB_ERRORS
from .ledger import (
    CATEGORIES,
    DEFAULT_CURRENCY,
    ROLE_ADMIN,
    category_label,
    find_user_by_email,
    insert_transaction,
    insert_user,
)

logger = logging.getLogger(__name__)

DEFAULT_PASSWORD = "Smile@1234"
UNKNOWN_USER_NAME = "Unknown User"
ADMIN_EMAIL = "admin@smile.local"
ADMIN_NAME = "Site Admin"
# Missing month or day parts resolve to the 1st, never to today.
DATE_DEFAULT = datetime(2000, 1, 1)

EMAIL_ALIASES = ("email", "email_address", "e-mail")
NAME_ALIASES = ("name", "fullname", "first name")
DATE_ALIASES = ("date", "transaction_date", "occurred at", "occurred_at")
DESCRIPTION_ALIASES = ("description", "memo")

SKIP_REASONS = (
    "missing_email",
    "missing_date",
    "invalid_date",
    "insert_user_failed",
    "no_amounts",
    "insert_tx_failed",
)


class LedgerSourceError(RuntimeError):
    """Raised when the CSV source cannot be read at all."""


class RowSkipped(Exception):
    reason = None


class MissingEmail(RowSkipped):
    reason = "missing_email"


class MissingDate(RowSkipped):
    reason = "missing_date"


class InvalidDate(RowSkipped):
    reason = "invalid_date"


class UserInsertFailed(RowSkipped):
    reason = "insert_user_failed"


class NoAmounts(RowSkipped):
    reason = "no_amounts"


class TransactionInsertFailed(RowSkipped):
    reason = "insert_tx_failed"


def category_aliases(category):
    return (category, category_label(category))


def normalize_row(raw_row):
    normalized = {}
    for key, value in (raw_row or {}).items():
        if key is None:
            continue
        normalized[str(key).strip().lower()] = "" if value is None else str(value).strip()
    return normalized


def resolve_field(row, aliases):
    for alias in aliases:
        value = row.get(alias)
        if value:
            return value
    return None


def coerce_date(value):
    """Return ``value`` as a UTC ISO-8601 timestamp (``...T00:00:00.000Z``)."""
    text = (value or "").strip()
    if not text:
        raise MissingDate("missing date")

    parsed = None
    for candidate in (text, text.replace("/", "-")):
        try:
            parsed = dtparser.parse(candidate, default=DATE_DEFAULT)
            break
        except (ValueError, OverflowError):
            continue
    if parsed is None:
        raise InvalidDate(f'invalid date "{text}"')

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        parsed = parsed.astimezone(timezone.utc)
    except OverflowError as exc:
        raise InvalidDate(f'invalid date "{text}"') from exc
    return parsed.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def coerce_amount(value):
    if value is None:
        return None
    text = str(value).replace(",", "").strip()
    if not text:
        return None
    try:
        amount = float(text)
    except ValueError:
        return None
    if not math.isfinite(amount):
        return None
    return amount


@dataclass
class RowOutcome:
    row_number: int
    imported: int = 0
    skip_reason: Optional[str] = None
    tx_failures: int = 0


@dataclass
class ImportSummary:
    rows: int = 0
    imported: int = 0
    skipped: int = 0
    reasons: Counter = field(default_factory=Counter)

    def add(self, outcome):
        self.rows += 1
        self.imported += outcome.imported
        if outcome.skip_reason:
            self.skipped += 1
            self.reasons[outcome.skip_reason] += 1
        if outcome.tx_failures:
            self.skipped += outcome.tx_failures
            self.reasons["insert_tx_failed"] += outcome.tx_failures

    def breakdown(self):
        return {reason: self.reasons[reason] for reason in SKIP_REASONS if self.reasons[reason]}

    def report_lines(self):
        lines = [f"Imported {self.imported} transactions. Skipped {self.skipped}."]
        breakdown = self.breakdown()
        if breakdown:
            lines.append("Skipped breakdown:")
            lines.extend(f" - {reason}: {count}" for reason, count in breakdown.items())
        return lines


def find_or_create_user(db, row, email, default_password, row_number, verbose=False):
    user = find_user_by_email(db, email)
    if user is not None:
        return user["id"]

    if verbose:
        logger.warning("Row %s: no user found for email %s, creating one", row_number, email)
    fullname = resolve_field(row, NAME_ALIASES) or UNKNOWN_USER_NAME
    try:
        user_id = insert_user(db, fullname, email, generate_password_hash(default_password))
        db.commit()
    except DB_ERRORS as exc:
        db.rollback()
        raise UserInsertFailed(f"failed to insert user for {email}: {exc}") from exc
    return user_id


def store_transaction(db, user_id, category, amount, description, occurred_at, currency):
    try:
        insert_transaction(db, user_id, category, amount, description, occurred_at, currency=currency)
        db.commit()
    except DB_ERRORS as exc:
        db.rollback()
        raise TransactionInsertFailed(f"failed to insert {category} transaction: {exc}") from exc


def import_row(db, raw_row, row_number, default_password=DEFAULT_PASSWORD, currency=DEFAULT_CURRENCY, verbose=False):
    outcome = RowOutcome(row_number=row_number)
    row = normalize_row(raw_row)
    try:
        email = (resolve_field(row, EMAIL_ALIASES) or "").lower()
        if not email:
            raise MissingEmail("missing email")

        user_id = find_or_create_user(db, row, email, default_password, row_number, verbose=verbose)
        occurred_at = coerce_date(resolve_field(row, DATE_ALIASES))
        description = resolve_field(row, DESCRIPTION_ALIASES) or ""

        for category in CATEGORIES:
            amount = coerce_amount(resolve_field(row, category_aliases(category)))
            if not amount:
                continue
            try:
                store_transaction(db, user_id, category, amount, description, occurred_at, currency)
                outcome.imported += 1
            except TransactionInsertFailed as exc:
                outcome.tx_failures += 1
                if verbose:
                    logger.error("Row %s: %s", row_number, exc)

        if not outcome.imported:
            raise NoAmounts("no amount columns had values")
    except RowSkipped as exc:
        outcome.skip_reason = exc.reason
        if verbose:
            logger.warning("Row %s: %s, skipping", row_number, exc)
    return outcome


def import_ledger_rows(db, rows, default_password=DEFAULT_PASSWORD, currency=DEFAULT_CURRENCY, verbose=False):
    summary = ImportSummary()
    for row_number, raw_row in enumerate(rows, start=1):
        summary.add(
            import_row(
                db,
                raw_row,
                row_number,
                default_password=default_password,
                currency=currency,
                verbose=verbose,
            )
        )
    return summary


def decode_csv_bytes(file_bytes):
    for encoding in ["utf-8-sig", "utf-8", "cp1252", "latin-1"]:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def read_csv_records(path):
    try:
        with open(path, "rb") as handle:
            file_bytes = handle.read()
    except OSError as exc:
        raise LedgerSourceError(f"Unable to read {path}: {exc}") from exc

    text = decode_csv_bytes(file_bytes)
    if text is None:
        raise LedgerSourceError(f"Unable to decode {path}")
    return list(csv.DictReader(io.StringIO(text)))


def import_ledger_csv(db, path, default_password=DEFAULT_PASSWORD, currency=DEFAULT_CURRENCY, verbose=False):
    records = read_csv_records(path)
    logger.info("Read %s rows from %s", len(records), path)
    return import_ledger_rows(db, records, default_password=default_password, currency=currency, verbose=verbose)


def seed_users(db, rows, default_password=DEFAULT_PASSWORD):
    """Create a member for every roster row whose email is not known yet."""
    created = 0
    for raw_row in rows:
        row = normalize_row(raw_row)
        email = (row.get("email") or "").lower()
        if not email or find_user_by_email(db, email) is not None:
            continue
        fullname = row.get("name") or row.get("fullname") or UNKNOWN_USER_NAME
        try:
            insert_user(db, fullname, email, generate_password_hash(default_password))
            db.commit()
            created += 1
        except DB_ERRORS as exc:
            db.rollback()
            logger.warning("Could not seed user %s: %s", email, exc)
    return created


def ensure_admin(db, default_password=DEFAULT_PASSWORD, email=ADMIN_EMAIL):
    user = find_user_by_email(db, email)
    if user is not None:
        return user["id"]
    user_id = insert_user(
        db,
        ADMIN_NAME,
        email,
        generate_password_hash(default_password),
        role=ROLE_ADMIN,
    )
    db.commit()
    return user_id

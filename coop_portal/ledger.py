"""Ledger store access and the per-member transaction summary."""

from dateutil import parser as dtparser
from dateutil import tz

from .db import row_to_dict


# Closed set of ledger categories, in display order.
CATEGORIES = [
    "thirteenth_month",
    "electronics_loan",
    "emergency_loan",
    "main_loan",
    "savings",
]
ROLE_MEMBER = "member"
ROLE_ADMIN = "admin"
DEFAULT_CURRENCY = "NGN"


def category_label(category):
    return category.replace("_", " ")


def find_user_by_email(db, email):
    return db.execute(
        """
        SELECT id, fullname, email, password_hash, role, must_change_password
        FROM users
        WHERE LOWER(email) = LOWER(?)
        """,
        ((email or "").strip(),),
    ).fetchone()


def find_user_by_id(db, user_id):
    return db.execute(
        "SELECT id, fullname, email, role, must_change_password, created_at FROM users WHERE id = ?",
        (user_id,),
    ).fetchone()


def insert_user(db, fullname, email, password_hash, role=ROLE_MEMBER, must_change_password=True):
    """Create a user and return its id. Driver errors propagate to the caller."""
    normalized_email = (email or "").strip().lower()
    db.execute(
        """
        INSERT INTO users (fullname, email, password_hash, role, must_change_password)
        VALUES (?, ?, ?, ?, ?)
        """,
        (fullname, normalized_email, password_hash, role, 1 if must_change_password else 0),
    )
    return find_user_by_email(db, normalized_email)["id"]


def insert_transaction(db, user_id, category, amount, description, occurred_at, currency=DEFAULT_CURRENCY):
    db.execute(
        """
        INSERT INTO transactions (user_id, category, amount, currency, description, occurred_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (user_id, category, amount, currency, description, occurred_at),
    )


def update_password(db, user_id, password_hash):
    db.execute(
        "UPDATE users SET password_hash = ?, must_change_password = 0 WHERE id = ?",
        (password_hash, user_id),
    )
    db.commit()


def list_users(db):
    rows = db.execute(
        "SELECT id, fullname, email, role, created_at FROM users ORDER BY id ASC"
    ).fetchall()
    return [row_to_dict(row) for row in rows]


def list_ledger(db, user_id):
    rows = db.execute(
        """
        SELECT t.id, t.category, t.amount, t.currency, t.description, t.occurred_at, u.fullname
        FROM transactions t
        JOIN users u ON u.id = t.user_id
        WHERE t.user_id = ?
        ORDER BY t.occurred_at DESC, t.id DESC
        """,
        (user_id,),
    ).fetchall()
    return [row_to_dict(row) for row in rows]


def list_all_ledger(db):
    rows = db.execute(
        """
        SELECT t.id, u.fullname, u.email, t.category, t.amount, t.currency, t.description, t.occurred_at
        FROM transactions t
        JOIN users u ON u.id = t.user_id
        ORDER BY t.occurred_at DESC, t.id DESC
        """
    ).fetchall()
    return [row_to_dict(row) for row in rows]


def resolve_timezone(name=None):
    """Return the zone used to bucket transactions into calendar days."""
    if not name:
        return tz.tzlocal()
    zone = tz.gettz(name)
    if zone is None:
        raise ValueError(f"Unknown timezone: {name}")
    return zone


def local_day(occurred_at, zone):
    moment = dtparser.isoparse(occurred_at)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=tz.UTC)
    return moment.astimezone(zone).date().isoformat()


def empty_summary_row(day, description):
    row = {"date": day, "description": description}
    row.update({category: 0 for category in CATEGORIES})
    return row


def summarize_transactions(db, user_id, upper_bound=None, zone=None):
    """Group a member's transactions by local day and description.

    Each output row carries ``date``, ``description`` and one sum per entry in
    ``CATEGORIES``; categories with no transactions in the group are 0. Rows
    come back newest day first. ``upper_bound`` is an inclusive canonical
    timestamp compared against ``occurred_at``.
    """
    zone = zone or tz.tzlocal()
    sql = "SELECT occurred_at, description, category, amount FROM transactions WHERE user_id = ?"
    params = [user_id]
    if upper_bound:
        sql += " AND occurred_at <= ?"
        params.append(upper_bound)

    groups = {}
    for row in db.execute(sql, params).fetchall():
        day = local_day(row["occurred_at"], zone)
        description = row["description"] or ""
        group = groups.get((day, description))
        if group is None:
            group = groups[(day, description)] = empty_summary_row(day, description)
        if row["category"] in CATEGORIES:
            group[row["category"]] += row["amount"]

    summary = sorted(groups.values(), key=lambda item: item["description"])
    summary.sort(key=lambda item: item["date"], reverse=True)
    return summary

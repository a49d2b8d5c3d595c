"""
auth.py
Authentication utilities: bcrypt hashing, admin login and password change.
Admins are member rows flagged is_admin; admin-only store operations check it through is_admin().
"""

from __future__ import annotations

import logging

import bcrypt
import db

log = logging.getLogger(__name__)


def _to_bcrypt_secret(password: str) -> bytes:
    """
    bcrypt only uses the first 72 BYTES of the password.
    We truncate to 72 bytes to avoid ValueError and to make behavior explicit.
    """
    pw = password.encode("utf-8")
    if len(pw) > 72:
        pw = pw[:72]
    return pw


def hash_password(password: str) -> str:
    """
    Returns a bcrypt hash as a UTF-8 string (stored in SQLite).
    """
    secret = _to_bcrypt_secret(password)
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(secret, salt)
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    secret = _to_bcrypt_secret(password)
    stored = password_hash.encode("utf-8")
    return bcrypt.checkpw(secret, stored)


def get_admin_by_email(email: str):
    return db.fetch_one(
        "SELECT * FROM members WHERE email = ? AND is_admin = 1",
        ((email or "").strip().lower(),),
    )


def is_admin(member_id: int) -> bool:
    row = db.fetch_one("SELECT is_admin FROM members WHERE id = ?", (member_id,))
    return bool(row and row["is_admin"])


def login(email: str, password: str) -> bool:
    admin = get_admin_by_email(email)
    if not admin:
        log.warning("Admin login rejected for %s", email)
        return False
    return verify_password(password, admin["password_hash"])


def change_password(email: str, new_password: str) -> None:
    new_hash = hash_password(new_password)
    db.execute(
        "UPDATE members SET password_hash = ? WHERE email = ? AND is_admin = 1",
        (new_hash, email.strip().lower()),
    )
    db.clear_force_password_change()

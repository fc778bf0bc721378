"""
auth.py
Admin authentication for the dashboard (bcrypt hashing, verify, login, change password).

The logged-in username is what the membership service stamps into created_by.
"""

from __future__ import annotations

import logging

import bcrypt

from db import Database

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


def _to_bcrypt_secret(password: str) -> bytes:
    """
    bcrypt only uses the first 72 BYTES of the password.
    We truncate to 72 bytes to avoid ValueError and to make behavior explicit.
    """
    pw = password.encode("utf-8")
    if len(pw) > 72:
        pw = pw[:72]
    return pw


def hash_password(password: str, rounds: int = 12) -> str:
    """
    Returns a bcrypt hash as a UTF-8 string (stored in SQLite).
    """
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(_to_bcrypt_secret(password), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    return bcrypt.checkpw(_to_bcrypt_secret(password), password_hash.encode("utf-8"))


def password_problems(new_password: str, confirm: str) -> list[str]:
    errors: list[str] = []
    if len(new_password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if new_password != confirm:
        errors.append("Passwords do not match.")
    return errors


class AdminAuth:
    def __init__(self, database: Database):
        self.db = database

    def get_admin_by_username(self, username: str):
        return self.db.fetch_one("SELECT * FROM admin_users WHERE username = ?", (username,))

    def login(self, username: str, password: str) -> bool:
        admin = self.get_admin_by_username(username)
        if not admin:
            logger.warning("Login attempt for unknown admin %r", username)
            return False
        ok = verify_password(password, admin["password_hash"])
        if not ok:
            logger.warning("Wrong password for admin %r", username)
        return ok

    def change_password(self, username: str, new_password: str, rounds: int = 12) -> None:
        self.db.execute(
            "UPDATE admin_users SET password_hash = ? WHERE username = ?",
            (hash_password(new_password, rounds=rounds), username),
        )
        self.db.clear_force_password_change()
        logger.info("Password changed for admin %r", username)

"""Password hashing with bcrypt."""

import bcrypt

# Compared against when the account does not exist, so a login for an unknown
# email costs the same bcrypt round as a wrong password.
_DUMMY_HASH = bcrypt.hashpw(b"pulse-unknown-account", bcrypt.gensalt()).decode("utf-8")


def hash_password(password: str) -> str:
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def verify_password(plain_password: str, hashed_password: str | None) -> bool:
    """Check ``plain_password`` against a bcrypt hash.

    A missing hash (unknown account) still runs one comparison and returns False.
    """
    candidate = hashed_password or _DUMMY_HASH
    matches = bcrypt.checkpw(plain_password.encode("utf-8"), candidate.encode("utf-8"))
    return matches and hashed_password is not None

import bcrypt

from midnight_brew.core.config import get_settings


def hash_password(pw: str) -> str:
    rounds = get_settings().bcrypt_rounds
    return bcrypt.hashpw(pw.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(pw: str, hashed: str) -> bool:
    if not pw or not hashed:
        return False
    try:
        return bcrypt.checkpw(pw.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash or over-long input
        return False

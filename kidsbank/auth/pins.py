"""
PIN hashing for family logins.

PINs are short, so they are only ever stored as salted, slow hashes.
"""

from passlib.context import CryptContext


pin_ctx = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class InvalidPinError(ValueError):
    """A PIN that does not have the required shape."""
    pass


def validate_pin(pin: str, length: int = 4) -> str:
    """Return the PIN if it is exactly `length` digits, else raise InvalidPinError."""
    if not isinstance(pin, str) or len(pin) != length or not pin.isdigit():
        raise InvalidPinError(f"PIN must be exactly {length} digits")
    return pin


def hash_pin(pin: str) -> str:
    return pin_ctx.hash(pin)


def verify_pin(pin: str, pin_hash: str) -> bool:
    if not pin or not pin_hash:
        return False
    try:
        return pin_ctx.verify(pin, pin_hash)
    except ValueError:
        # Unrecognised or corrupt hash
        return False

"""PIN authentication package."""

from kidsbank.auth.pins import InvalidPinError, hash_pin, validate_pin, verify_pin

__all__ = ["InvalidPinError", "hash_pin", "validate_pin", "verify_pin"]

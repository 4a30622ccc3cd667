"""
Taxpayer identifier (NIP) checksum.

A NIP has ten digits. Digits 1-9 are multiplied by a fixed weight vector,
the products summed and taken mod 11; the result must equal digit 10.
A remainder of 10 can never match a single digit, so such numbers are
never valid.
"""
import re
from typing import Optional

NIP_WEIGHTS = (6, 5, 7, 2, 3, 4, 5, 6, 7)

_NON_DIGITS = re.compile(r"\D")


def normalize_nip(value: Optional[str]) -> str:
    """Strip everything that is not a digit ("PL 521-301-72-28" -> "5213017228")."""
    if not value:
        return ""
    return _NON_DIGITS.sub("", value)


def nip_checksum(digits: str) -> int:
    """Weighted sum of the first nine digits, mod 11."""
    return sum(int(d) * w for d, w in zip(digits[:9], NIP_WEIGHTS)) % 11


def validate_nip(value: Optional[str]) -> bool:
    """Return True when value is a 10-digit NIP with a correct check digit."""
    digits = normalize_nip(value)
    if len(digits) != 10:
        return False
    return nip_checksum(digits) == int(digits[9])

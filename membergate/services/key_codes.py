"""Key code normalisation, validation and generation."""

import re
import secrets

# No 0/O/1/I: codes are typed in by hand
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
RANDOM_PART_LENGTH = 8

_CODE_RE = re.compile(r"^[A-Z0-9-]{4,64}$")
_DURATION_CODE_RE = re.compile(r"^(\d+(?:\.\d+)?)([HDMY])$")

_HOURS_PER_UNIT = {"H": 1, "D": 24, "M": 24 * 30, "Y": 24 * 365}


def normalize_code(raw_code: str | None) -> str:
    return (raw_code or "").strip().upper()


def is_valid_code(code: str) -> bool:
    """Check the shape of an already-normalised code."""
    return bool(_CODE_RE.match(code))


def random_part(length: int = RANDOM_PART_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def duration_code_for(hours: float) -> str:
    """Short duration tag used inside access key codes: 12H, 7D, 1M, 2Y."""
    if hours < 24:
        return f"{int(hours)}H"
    if hours < 24 * 30:
        return f"{int(hours // 24)}D"
    if hours < 24 * 365:
        return f"{round(hours / (24 * 30))}M"
    return f"{round(hours / (24 * 365))}Y"


def parse_duration_code(code: str) -> float:
    """Inverse of :func:`duration_code_for`. Months are 30 days, years 365."""
    match = _DURATION_CODE_RE.match(code.strip().upper())
    if match is None:
        raise ValueError(f"Invalid duration code: {code!r}")
    value, unit = match.groups()
    return float(value) * _HOURS_PER_UNIT[unit]


def access_key_code(prefix: str, grant_duration_hours: float) -> str:
    """``XY-30D-ABCD2345`` style code."""
    return f"{normalize_code(prefix)}-{duration_code_for(grant_duration_hours)}-{random_part()}"


def boost_key_code(prefix: str) -> str:
    """``AI-ABCD-2345`` style code."""
    part = random_part()
    return f"{normalize_code(prefix)}-{part[:4]}-{part[4:]}"

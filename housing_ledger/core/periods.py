import calendar
from datetime import date
from typing import Tuple


def month_key(d: date) -> str:
    return f"{d.year}-{d.month:02d}"


def format_month(year: int, month: int) -> str:
    return f"{year}-{month:02d}"


def parse_month_key(key: str) -> Tuple[int, int]:
    """'2025-08' -> (2025, 8). Raises ValueError on anything else."""
    year_part, _, month_part = key.partition("-")
    year, month = int(year_part), int(month_part)
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month key: {key}")
    return year, month


def month_bounds(year: int, month: int) -> Tuple[date, date]:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)

"""Calendar helpers for due dates and tenure"""

from datetime import date
import calendar


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping the day to the target month's end"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def months_between(start: date, end: date) -> int:
    """Whole calendar months from start to end; negative when end precedes start"""
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if months > 0 and end.day < start.day:
        months -= 1
    elif months < 0 and end.day > start.day:
        months += 1
    return months

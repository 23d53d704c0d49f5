"""Client-side identifier generation.

Ids combine the last six digits of the millisecond clock with a three-digit random
suffix. Nothing checks them against the sheet, so two creations in the same
millisecond can collide; invoice ids are the exception and are sequential per year.
"""

import random
import re
import time
from datetime import date
from typing import Iterable, Optional


def _stamp() -> str:
    timestamp = str(int(time.time() * 1000))[-6:]
    suffix = f"{random.randint(0, 999):03d}"
    return f"{timestamp}-{suffix}"


def _year(today: Optional[date]) -> int:
    return (today or date.today()).year


def generate_project_id(today: Optional[date] = None) -> str:
    return f"PROJ-{_year(today)}-{_stamp()}"


def generate_client_id(today: Optional[date] = None) -> str:
    return f"CLIENT-{_year(today)}-{_stamp()}"


def generate_task_id() -> str:
    return f"TASK-{_stamp()}"


def generate_time_entry_id() -> str:
    return f"TIME-{_stamp()}"


def generate_activity_id() -> str:
    return f"ACT-{_stamp()}"


def generate_expense_id() -> str:
    return f"EXP-{_stamp()}"


def generate_payment_id() -> str:
    return f"PAY-{_stamp()}"


def next_invoice_id(existing_ids: Iterable[str], today: Optional[date] = None) -> str:
    """Return ``INV-<year>-<seq>`` one past the highest sequence issued this year."""

    year = _year(today)
    pattern = re.compile(rf"^INV-{year}-(\d+)$")
    highest = 0
    for invoice_id in existing_ids:
        match = pattern.match(invoice_id or "")
        if match:
            highest = max(highest, int(match.group(1)))
    return f"INV-{year}-{highest + 1:06d}"

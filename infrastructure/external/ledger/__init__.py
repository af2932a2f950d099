"""
Factory for the accounting-ledger client.
"""
from __future__ import annotations

import httpx

from application.ports.ledger import Ledger
from core.settings import payment_settings


def get_ledger() -> Ledger:
    from .zoho_books_client import ZohoBooksClient

    t = payment_settings.timeouts
    return ZohoBooksClient(
        payment_settings.ledger,
        timeout=httpx.Timeout(connect=t.connect, read=t.read, write=t.write, timeout=t.total),
        retry=payment_settings.retry,
    )

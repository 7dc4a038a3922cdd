import asyncio
from typing import Dict, List, Tuple

from portal.domain import Expense, Payment


async def collections_by_month(payments: List[Payment], months: List[str]) -> Dict[str, int]:
    """Total payments received per month, one task per month.

    months: list of YYYY-MM strings (e.g., '2025-01')
    """
    async def month_total(month: str) -> Tuple[str, int]:
        total = sum(p.amount for p in payments if p.date.startswith(month))
        await asyncio.sleep(0)  # cooperate
        return month, total

    results = await asyncio.gather(*(month_total(m) for m in months))
    return {k: v for k, v in results}


async def expenses_by_month(expenses: List[Expense], months: List[str]) -> Dict[str, int]:
    """Total paid expenses per month. Unpaid bills are not spending yet."""
    async def month_total(month: str) -> Tuple[str, int]:
        total = sum(e.amount for e in expenses if e.paid and e.date.startswith(month))
        await asyncio.sleep(0)
        return month, total

    results = await asyncio.gather(*(month_total(m) for m in months))
    return {k: v for k, v in results}


async def monthly_overview(payments: List[Payment], expenses: List[Expense], months: List[str]) -> Dict[str, Dict[str, int]]:
    collected, spent = await asyncio.gather(
        collections_by_month(payments, months),
        expenses_by_month(expenses, months),
    )
    return {
        m: {"collected": collected[m], "spent": spent[m], "net": collected[m] - spent[m]}
        for m in months
    }

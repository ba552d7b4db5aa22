from __future__ import annotations
import csv
import io
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from fastapi.responses import Response

from . import config

TICKET_COLUMNS = (
    "id", "eventName", "eventDate", "venue", "section", "row", "seat",
    "status", "askingPrice", "createdAt", "userName",
)
USER_COLUMNS = (
    "id", "username", "email", "ticketCount", "totalRevenue", "createdAt",
    "lastLogin",
)
SALES_COLUMNS = (
    "id", "ticketId", "eventName", "salePrice", "saleDate", "buyerEmail",
    "sellerUsername", "commission",
)

EXPORTS = {
    "tickets": TICKET_COLUMNS,
    "users": USER_COLUMNS,
    "sales": SALES_COLUMNS,
}


def to_csv(rows: Iterable[Dict[str, Any]], columns: Sequence[str]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(columns)
    for row in rows:
        writer.writerow(
            ["" if row.get(c) is None else row.get(c) for c in columns]
        )
    return buf.getvalue()


def commission(price: Any, rate: float) -> int:
    """Whole-unit commission, halves rounded up (125 at 10% is 13)."""
    amount = Decimal(str(price or 0)) * Decimal(str(rate))
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def with_commission(sales: List[Dict[str, Any]],
                    rate: Optional[float] = None) -> List[Dict[str, Any]]:
    rate = config.SALES_COMMISSION_RATE if rate is None else rate
    return [
        {**s, "commission": commission(s.get("salePrice"), rate)}
        for s in sales
    ]


def export_filename(kind: str, today: Optional[date] = None) -> str:
    today = today or date.today()
    return f"{kind}-{today.isoformat()}.csv"


def csv_response(kind: str, rows: Iterable[Dict[str, Any]]) -> Response:
    return Response(
        content=to_csv(rows, EXPORTS[kind]),
        media_type="text/csv",
        headers={
            "Content-Disposition":
                f'attachment; filename="{export_filename(kind)}"',
        },
    )

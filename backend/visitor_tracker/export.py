"""CSV rendering of the event log."""
from __future__ import annotations

import csv
import io
from typing import Iterable, Iterator, List

from .addresses import unpack_ip
from .models import VisitEvent

CSV_HEADER = ["ID", "Timestamp", "Email", "IP", "Event", "URL", "User-Agent"]
CSV_FILENAME = "visitor-logs.csv"


def event_row(event: VisitEvent) -> List[str]:
    return [
        str(event.id),
        event.ts.strftime("%Y-%m-%d %H:%M:%S"),
        event.email or "",
        unpack_ip(event.ip),
        event.event.value,
        event.url,
        event.user_agent or "",
    ]


def iter_csv(events: Iterable[VisitEvent], flush_every: int = 200) -> Iterator[str]:
    """Yield CSV text in chunks of roughly ``flush_every`` rows."""
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_HEADER)
    pending = 0
    for event in events:
        writer.writerow(event_row(event))
        pending += 1
        if pending >= flush_every:
            yield buffer.getvalue()
            buffer.seek(0)
            buffer.truncate(0)
            pending = 0
    yield buffer.getvalue()

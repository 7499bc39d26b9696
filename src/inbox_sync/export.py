"""Export subscriptions to CSV or JSON."""

import csv
import json

from .models import Subscription

_FIELDS = [
    "sender_email",
    "sender_name",
    "sender_domain",
    "email_count",
    "first_email_at",
    "last_email_at",
    "unsubscribe_method",
    "list_unsubscribe",
    "status",
]


def _row(sub: Subscription) -> dict:
    return {
        "sender_email": sub.sender_email,
        "sender_name": sub.sender_name or "",
        "sender_domain": sub.sender_domain,
        "email_count": sub.email_count,
        "first_email_at": sub.first_email_at.isoformat(),
        "last_email_at": sub.last_email_at.isoformat(),
        "unsubscribe_method": sub.unsubscribe_method.value,
        "list_unsubscribe": sub.list_unsubscribe or "",
        "status": sub.status.value,
    }


def export_subscriptions(subscriptions: list[Subscription], format: str, output_path: str) -> int:
    """Write subscriptions to ``output_path`` and return the number of rows.

    Args:
        subscriptions: Subscriptions to export, in display order.
        format: Output format, either 'csv' or 'json'.
        output_path: Path to write the output file.
    """
    rows = [_row(sub) for sub in subscriptions]

    if format == "csv":
        with open(output_path, "w", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=_FIELDS)
            writer.writeheader()
            writer.writerows(rows)
    elif format == "json":
        with open(output_path, "w") as f:
            json.dump(rows, f, indent=2)
    else:
        raise ValueError(f"Unsupported export format: {format}")

    return len(rows)

"""UTC clock helper.

``datetime.utcnow()`` is deprecated since Python 3.12. This wrapper produces
the **naive** UTC datetimes the database layer stores.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

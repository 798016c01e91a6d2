"""
Status Classifier

Maps a unified listing to its lifecycle state. The sold sync uses this to
decide which rows belong in sold_listings.

Order matters: a listing whose current status is on-market is never treated
as sold, even when its restricted payload carries sold-like fields from an
earlier sale.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Optional

from .listing_models import ListingStatus, Payload, RawListing, SoldListing, utc_now_iso

logger = logging.getLogger(__name__)

ON_MARKET_STATUSES = frozenset({
    "Active", "For Sale", "New", "Coming Soon", "Pending", "Active Under Contract",
})

TERMINAL_STATUSES = {
    "Sold": ListingStatus.SOLD,
    "Terminated": ListingStatus.TERMINATED,
    "Expired": ListingStatus.EXPIRED,
    "Canceled": ListingStatus.CANCELED,
    "Closed": ListingStatus.CLOSED,
}

STATUS_FIELDS = ('StandardStatus', 'Status', 'MlsStatus')
SOLD_EVIDENCE_FIELDS = ('ClosePrice', 'SoldEntryTimestamp', 'CloseDate')
CLOSED_DATE_FIELDS = ('CloseDate', 'SoldEntryTimestamp', 'PurchaseContractDate')

_DATE_FORMATS = ('%Y-%m-%d %H:%M:%S', '%Y/%m/%d', '%m/%d/%Y')


def _first_present(payload: Optional[Payload], fields) -> Any:
    """First value among fields that is not None"""
    if not payload:
        return None
    for name in fields:
        value = payload.get(name)
        if value is not None:
            return value
    return None


def current_status(listing: RawListing) -> str:
    """
    The listing's current status string.

    Read from the public payload, falling back to the restricted payload
    when the public one has no usable value.
    """
    public_status = _first_present(listing.public_payload, STATUS_FIELDS)
    restricted_status = _first_present(listing.restricted_payload, STATUS_FIELDS)
    status = public_status or restricted_status or ""
    return str(status).strip()


def classify(listing: RawListing) -> ListingStatus:
    """
    Classify a unified listing.

    Args:
        listing: Raw listing record

    Returns:
        The terminal label (Sold, Terminated, Expired, Canceled, Closed) or
        NotTerminal
    """
    status = current_status(listing)

    if status in ON_MARKET_STATUSES:
        return ListingStatus.NOT_TERMINAL
    if status in TERMINAL_STATUSES:
        return TERMINAL_STATUSES[status]

    # No recognizable status: infer from which feeds carry the listing
    if listing.public_payload:
        return ListingStatus.NOT_TERMINAL
    if listing.restricted_payload and _first_present(listing.restricted_payload, SOLD_EVIDENCE_FIELDS):
        return ListingStatus.SOLD
    return ListingStatus.NOT_TERMINAL


def is_terminal(listing: RawListing) -> bool:
    return classify(listing).is_terminal


def parse_calendar_date(value: Any) -> Optional[str]:
    """
    Parse a feed date/timestamp and truncate it to a YYYY-MM-DD day.

    Timezone-aware timestamps are converted to UTC first. Unparseable
    values return None.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return value.isoformat()
    elif isinstance(value, (int, float)):
        # Epoch milliseconds
        try:
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
        except ValueError:
            parsed = None
            for fmt in _DATE_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
            if parsed is None:
                logger.debug(f"Unparseable date value: {text!r}")
                return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.date().isoformat()


def closed_date(listing: RawListing) -> Optional[str]:
    """Closing day taken from the restricted payload, or None"""
    return parse_calendar_date(_first_present(listing.restricted_payload, CLOSED_DATE_FIELDS))


def build_sold_listing(listing: RawListing) -> SoldListing:
    """Sold-listing row: payloads verbatim plus status label and closed date"""
    return SoldListing(
        listing_key=listing.listing_key,
        public_payload=listing.public_payload or {},
        restricted_payload=listing.restricted_payload,
        status=classify(listing).value,
        closed_date=closed_date(listing),
        updated_at=listing.updated_at or utc_now_iso(),
    )

"""
Clean Projection Builder

Produces the sparse copy of a unified listing stored in
listings_unified_clean. Keys whose value is null or an empty list are
dropped; everything else ({} , 0, False, "") is kept as-is. The projection
is a pure function of the raw row, so the backfill can be re-run at any time.
"""

from typing import Optional

from .listing_models import CleanListing, Payload, RawListing, utc_now_iso


def clean(payload: Optional[Payload]) -> Optional[Payload]:
    """Drop top-level keys whose value is None or []"""
    if payload is None or not isinstance(payload, dict):
        return payload
    return {
        key: value
        for key, value in payload.items()
        if value is not None and not (isinstance(value, list) and len(value) == 0)
    }


def build_clean_listing(listing: RawListing) -> CleanListing:
    """
    Clean projection row for a raw listing.

    The public payload defaults to {} when absent; the restricted payload
    stays None when the listing has none.
    """
    return CleanListing(
        listing_key=listing.listing_key,
        public_payload=clean(listing.public_payload or {}),
        restricted_payload=clean(listing.restricted_payload) if listing.restricted_payload is not None else None,
        updated_at=listing.updated_at or utc_now_iso(),
    )

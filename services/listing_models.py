"""
Listing Data Model

Typed records moved between the unified listing store and the derived
stores. Payloads are open maps (string key -> JSON value) coming straight
from the feeds; they are never validated against a schema here.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

# Column names of the two payloads in the data store
PUBLIC_PAYLOAD_COLUMN = 'idx'
RESTRICTED_PAYLOAD_COLUMN = 'vow'

RAW_LISTING_COLUMNS = f"listing_key, {PUBLIC_PAYLOAD_COLUMN}, {RESTRICTED_PAYLOAD_COLUMN}, updated_at"

PayloadValue = Union[None, bool, int, float, str, List[Any], Dict[str, Any]]
Payload = Dict[str, PayloadValue]


def utc_now_iso() -> str:
    """Current time as an ISO 8601 UTC timestamp"""
    return datetime.now(timezone.utc).isoformat()


class ListingStatus(str, Enum):
    """Lifecycle state of a listing"""
    ACTIVE = "Active"
    SOLD = "Sold"
    TERMINATED = "Terminated"
    EXPIRED = "Expired"
    CANCELED = "Canceled"
    CLOSED = "Closed"
    NOT_TERMINAL = "NotTerminal"

    @property
    def is_terminal(self) -> bool:
        return self not in (ListingStatus.ACTIVE, ListingStatus.NOT_TERMINAL)


@dataclass
class RawListing:
    """One row of the unified listing store"""
    listing_key: str
    public_payload: Payload = field(default_factory=dict)
    restricted_payload: Optional[Payload] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict) -> 'RawListing':
        """Build from a store row; a non-map payload is treated as absent"""
        public = row.get(PUBLIC_PAYLOAD_COLUMN)
        restricted = row.get(RESTRICTED_PAYLOAD_COLUMN)
        return cls(
            listing_key=str(row['listing_key']),
            public_payload=public if isinstance(public, dict) else {},
            restricted_payload=restricted if isinstance(restricted, dict) else None,
            updated_at=row.get('updated_at'),
        )

    def to_row(self) -> Dict:
        return {
            'listing_key': self.listing_key,
            PUBLIC_PAYLOAD_COLUMN: self.public_payload,
            RESTRICTED_PAYLOAD_COLUMN: self.restricted_payload,
            'updated_at': self.updated_at,
        }


@dataclass
class CleanListing:
    """Sparse projection of a raw listing (no null or [] values)"""
    listing_key: str
    public_payload: Payload
    restricted_payload: Optional[Payload]
    updated_at: str

    def to_row(self) -> Dict:
        return {
            'listing_key': self.listing_key,
            PUBLIC_PAYLOAD_COLUMN: self.public_payload,
            RESTRICTED_PAYLOAD_COLUMN: self.restricted_payload,
            'updated_at': self.updated_at,
        }


@dataclass
class SoldListing:
    """A listing whose lifecycle state is terminal"""
    listing_key: str
    public_payload: Payload
    restricted_payload: Optional[Payload]
    status: str
    closed_date: Optional[str]
    updated_at: str

    def to_row(self) -> Dict:
        return {
            'listing_key': self.listing_key,
            PUBLIC_PAYLOAD_COLUMN: self.public_payload,
            RESTRICTED_PAYLOAD_COLUMN: self.restricted_payload,
            'status': self.status,
            'closed_date': self.closed_date,
            'updated_at': self.updated_at,
        }

"""
Metro-Area Centers for the Places Cache Warm Job

Fixed table of search centers covering every serviced region in Canada.
Each center is searched with a 15 km radius, so neighbouring centers inside
large metros (Toronto, Montreal, Vancouver, Calgary, Edmonton) overlap and
results are deduplicated by place id before being written.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetroCenter:
    """A search center for the bulk places job"""
    latitude: float
    longitude: float
    name: str = ""


CANADA_METRO_CENTERS: List[MetroCenter] = [
    MetroCenter(43.65, -79.38, "Toronto"),
    MetroCenter(43.68, -79.61, "Toronto W (Etobicoke)"),
    MetroCenter(43.78, -79.19, "Toronto E (Scarborough)"),
    MetroCenter(43.85, -79.44, "North York"),
    MetroCenter(43.59, -79.64, "Mississauga"),
    MetroCenter(43.69, -79.87, "Brampton"),
    MetroCenter(43.46, -79.69, "Oakville / Burlington"),
    MetroCenter(43.25, -79.87, "Hamilton"),
    MetroCenter(43.90, -79.26, "Markham"),
    MetroCenter(44.06, -79.46, "Newmarket / Aurora"),
    MetroCenter(43.52, -79.87, "Milton"),
    MetroCenter(43.37, -80.31, "Kitchener / Waterloo"),
    MetroCenter(43.55, -80.25, "Guelph"),
    MetroCenter(43.01, -81.23, "London"),
    MetroCenter(42.98, -79.25, "Niagara / St. Catharines"),
    MetroCenter(44.23, -76.49, "Kingston"),
    MetroCenter(44.36, -78.74, "Peterborough"),
    MetroCenter(44.39, -79.69, "Barrie"),
    MetroCenter(45.42, -75.69, "Ottawa"),
    MetroCenter(45.50, -73.57, "Montreal"),
    MetroCenter(45.38, -73.75, "Montreal W (Lachine)"),
    MetroCenter(45.55, -73.43, "Montreal E (Anjou)"),
    MetroCenter(45.53, -73.65, "Laval"),
    MetroCenter(45.58, -73.45, "Longueuil"),
    MetroCenter(46.81, -71.21, "Quebec City"),
    MetroCenter(45.40, -71.89, "Sherbrooke"),
    MetroCenter(46.35, -72.55, "Trois-Rivières"),
    MetroCenter(49.28, -123.12, "Vancouver"),
    MetroCenter(49.23, -123.00, "Burnaby"),
    MetroCenter(49.19, -122.85, "Surrey"),
    MetroCenter(49.14, -122.33, "Langley / Abbotsford"),
    MetroCenter(49.32, -123.07, "North Vancouver"),
    MetroCenter(49.21, -122.91, "New Westminster / Coquitlam"),
    MetroCenter(49.17, -123.14, "Richmond"),
    MetroCenter(48.43, -123.37, "Victoria"),
    MetroCenter(49.88, -119.50, "Kelowna"),
    MetroCenter(50.67, -120.34, "Kamloops"),
    MetroCenter(51.05, -114.07, "Calgary"),
    MetroCenter(51.08, -114.22, "Calgary W"),
    MetroCenter(51.12, -113.93, "Calgary NE"),
    MetroCenter(53.55, -113.49, "Edmonton"),
    MetroCenter(53.52, -113.62, "Edmonton W"),
    MetroCenter(52.27, -113.81, "Red Deer"),
    MetroCenter(50.40, -105.53, "Regina"),
    MetroCenter(52.13, -106.67, "Saskatoon"),
    MetroCenter(49.88, -97.15, "Winnipeg"),
    MetroCenter(46.09, -64.77, "Moncton"),
    MetroCenter(45.27, -66.06, "Saint John"),
    MetroCenter(44.65, -63.57, "Halifax"),
    MetroCenter(46.24, -63.13, "Charlottetown"),
    MetroCenter(47.56, -52.71, "St. John's"),
]


def parse_centers(value: Optional[str]) -> List[MetroCenter]:
    """
    Parse a "lat,lng|lat,lng" override into search centers.

    Malformed entries are dropped. An empty or missing value returns the
    built-in Canadian table.

    Args:
        value: Raw override string (typically GOOGLE_PLACES_CENTERS)

    Returns:
        List of MetroCenter
    """
    if not value or not isinstance(value, str) or not value.strip():
        return list(CANADA_METRO_CENTERS)

    centers = []
    for chunk in value.split('|'):
        parts = chunk.strip().split(',')
        if len(parts) != 2:
            logger.warning(f"Ignoring malformed center {chunk!r}")
            continue
        try:
            lat, lng = float(parts[0]), float(parts[1])
        except ValueError:
            logger.warning(f"Ignoring malformed center {chunk!r}")
            continue
        if not (-90 <= lat <= 90 and -180 <= lng <= 180):
            logger.warning(f"Ignoring out-of-range center {chunk!r}")
            continue
        centers.append(MetroCenter(lat, lng, f"{lat:.2f},{lng:.2f}"))
    return centers

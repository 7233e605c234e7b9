"""Document title and description for a show page"""

from datetime import datetime
from typing import Dict, Optional

import structlog

from .models import ShowDetail, parse_timestamp

logger = structlog.get_logger(__name__)

SITE_NAME = "TheSet"
FALLBACK_METADATA = {
    "title": f"Show Details | {SITE_NAME}",
    "description": f"Vote on setlists for upcoming concerts and shows on {SITE_NAME}.",
}


def format_show_date(value) -> str:
    """'Sat, Oct 17, 2026', or 'TBD' when the date is missing or unparseable."""
    parsed: Optional[datetime] = parse_timestamp(value)
    if parsed is None:
        return "TBD"
    return f"{parsed.strftime('%a, %b')} {parsed.day}, {parsed.year}"


def format_location(city: Optional[str], state: Optional[str]) -> str:
    if city and state:
        return f"{city}, {state}"
    return city or state or "Location"


def build_document_metadata(show: Optional[ShowDetail]) -> Dict[str, str]:
    if show is None:
        return dict(FALLBACK_METADATA)

    try:
        artist_name = (show.artist.name if show.artist else None) or "Artist"
        venue = show.venue
        venue_name = (venue.name if venue else None) or "Venue"
        location = format_location(venue.city if venue else None, venue.state if venue else None)
        date = format_show_date(show.date)
    except (AttributeError, ValueError, TypeError) as e:
        logger.warning("Falling back to generic page metadata", show_id=getattr(show, "id", None), error=str(e))
        return dict(FALLBACK_METADATA)

    return {
        "title": f"{SITE_NAME} | {artist_name} at {venue_name} in {location} | {date}",
        "description": (
            f"Vote on {artist_name}'s setlist for their show at {venue_name} in {location} "
            f"on {date}. Influence what songs they'll play live!"
        ),
    }

"""Per-provider event normalizers."""

from calsync.normalizers.google import canonical_to_google_event, google_event_to_canonical
from calsync.normalizers.outlook import canonical_to_outlook_event, outlook_event_to_canonical

__all__ = [
    "canonical_to_google_event",
    "canonical_to_outlook_event",
    "google_event_to_canonical",
    "outlook_event_to_canonical",
]

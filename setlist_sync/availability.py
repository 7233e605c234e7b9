"""Available tracks: the artist's catalog minus songs already in the setlist"""

from typing import Iterable, List, Optional, Sequence, Tuple

from .models import SetlistEntry, Track


def _setlist_ids(setlist: Iterable) -> Tuple[str, ...]:
    ids = []
    for item in setlist or ():
        if isinstance(item, SetlistEntry):
            ids.append(item.song.id)
        elif isinstance(item, Track):
            ids.append(item.id)
        elif isinstance(item, dict):
            ids.append(item.get("id"))
        else:
            ids.append(str(item))
    return tuple(ids)


def compute_available_tracks(stored_tracks: Sequence[Track], setlist: Iterable) -> List[Track]:
    """Stored tracks whose id is absent from the setlist, in stored order.

    The setlist may hold SetlistEntry objects, Tracks, dicts with an "id" key
    or plain ids.
    """
    taken = set(_setlist_ids(setlist))
    return [track for track in stored_tracks or () if track.id not in taken]


class AvailableTracksMemo:
    """Memoizes compute_available_tracks on the (tracks, setlist ids) pair"""

    def __init__(self):
        self._key: Optional[Tuple[Tuple[Track, ...], Tuple[str, ...]]] = None
        self._value: List[Track] = []

    def get(self, stored_tracks: Sequence[Track], setlist: Iterable) -> List[Track]:
        key = (tuple(stored_tracks or ()), _setlist_ids(setlist))
        if key != self._key:
            self._value = compute_available_tracks(stored_tracks, key[1])
            self._key = key
        return list(self._value)

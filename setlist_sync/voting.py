"""
Setlist Voting Engine

Live setlist state for a show: songs proposed by participants plus their
vote counts, kept in insertion order. Votes change counts, never order;
ranking by votes is a sorted copy.

One SetlistState per show is shared by every participant session in the
process. Each participant gets a SetlistVotingEngine bound to their auth
capability and session id. Anonymous sessions may cast at most
anonymous_vote_limit votes per show and are then asked to log in.
"""

import uuid
from collections import OrderedDict, defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import structlog

from .auth import AuthProvider
from .availability import AvailableTracksMemo, compute_available_tracks
from .background import TaskSupervisor
from .errors import QuotaExceeded
from .metrics import songs_added_total, votes_total
from .models import SetlistEntry, Track
from .realtime import RealtimeChannel, SetlistEvent

logger = structlog.get_logger(__name__)

# Distinct songs with votes waiting for their add_song event
MAX_PENDING_SONGS = 256


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class AnonymousVoteQuota:
    """Votes cast per (show, anonymous session)"""

    def __init__(self, limit: int = 3):
        self.limit = limit
        self._counts: Dict[Tuple[str, str], int] = defaultdict(int)

    def used(self, show_id: str, session_id: str) -> int:
        return self._counts.get((show_id, session_id), 0)

    def remaining(self, show_id: str, session_id: str) -> int:
        return max(self.limit - self.used(show_id, session_id), 0)

    def exhausted(self, show_id: str, session_id: str) -> bool:
        return self.used(show_id, session_id) >= self.limit

    def charge(self, show_id: str, session_id: str) -> int:
        self._counts[(show_id, session_id)] += 1
        return self._counts[(show_id, session_id)]


class SetlistState:
    """Ordered setlist of one show, shared by all sessions in this process"""

    def __init__(self, show_id: str):
        self.show_id = show_id
        self.node_id = uuid.uuid4().hex
        self.entries: List[SetlistEntry] = []
        self._index: Dict[str, SetlistEntry] = {}
        # Votes that arrived before their add_song event, oldest song first
        self._pending_votes: "OrderedDict[str, int]" = OrderedDict()
        self.seeded = False

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[SetlistEntry]:
        return iter(self.entries)

    def __contains__(self, song_id: str) -> bool:
        return song_id in self._index

    def get(self, song_id: str) -> Optional[SetlistEntry]:
        return self._index.get(song_id)

    def append(self, track: Track) -> Optional[SetlistEntry]:
        """Append with zero votes; None if the song is already present."""
        if track.id in self._index:
            return None
        entry = SetlistEntry(song=track, votes=0, position=len(self.entries))
        self.entries.append(entry)
        self._index[track.id] = entry
        pending = self._pending_votes.pop(track.id, 0)
        if pending:
            entry.votes += pending
        return entry

    def increment(self, song_id: str) -> Optional[SetlistEntry]:
        entry = self._index.get(song_id)
        if entry is not None:
            entry.votes += 1
        return entry

    def seed(self, tracks: Sequence[Track]) -> int:
        """Seed an empty setlist once; returns the number of songs added."""
        if not tracks:
            return 0
        if self.seeded or self.entries:
            self.seeded = True
            return 0
        added = sum(1 for track in tracks if self.append(track) is not None)
        self.seeded = True
        return added

    def ranked(self) -> List[SetlistEntry]:
        """Copy sorted by votes (stable on ties); storage order is untouched."""
        return sorted(self.entries, key=lambda e: -e.votes)

    async def apply_remote_event(self, event: SetlistEvent) -> None:
        """Apply an event published by another process; own events are skipped."""
        if event.show_id != self.show_id or event.origin == self.node_id:
            return
        if event.type == "add_song":
            if event.song is not None:
                self.append(event.song)
        elif event.type == "vote":
            if self.increment(event.song_id) is None:
                self._hold_vote(event.song_id)

    def _hold_vote(self, song_id: str) -> None:
        self._pending_votes[song_id] = self._pending_votes.get(song_id, 0) + 1
        self._pending_votes.move_to_end(song_id)
        if len(self._pending_votes) > MAX_PENDING_SONGS:
            dropped, votes = self._pending_votes.popitem(last=False)
            logger.warning(
                "Dropping votes for a song that never arrived",
                show_id=self.show_id,
                song_id=dropped,
                votes=votes
            )

    @property
    def pending_vote_songs(self) -> int:
        return len(self._pending_votes)


@dataclass
class VoteResult:
    accepted: bool
    song_id: str
    votes: int = 0
    reason: Optional[str] = None
    remaining_anonymous_votes: Optional[int] = None


class SetlistVotingEngine:
    """Per-participant handle on a show's live setlist"""

    def __init__(
        self,
        show_id: str,
        state: SetlistState,
        auth: AuthProvider,
        quota: AnonymousVoteQuota,
        channel: Optional[RealtimeChannel] = None,
        supervisor: Optional[TaskSupervisor] = None,
        session_id: Optional[str] = None
    ):
        self.show_id = show_id
        self.state = state
        self.auth = auth
        self.quota = quota
        self.channel = channel
        self.supervisor = supervisor or TaskSupervisor()
        self.session_id = session_id or uuid.uuid4().hex

        self.connection_state = ConnectionState.DISCONNECTED
        self.selected_track: Optional[str] = None
        self.stored_tracks: List[Track] = []
        self.fallback_tracks: List[Track] = []
        self._memo = AvailableTracksMemo()

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return (
            self.connection_state == ConnectionState.CONNECTED
            and self.channel is not None
            and self.channel.connected
        )

    @property
    def degraded(self) -> bool:
        """Was connected but the channel dropped; transport falls back to polling."""
        return self.connection_state == ConnectionState.CONNECTED and not self.connected

    async def connect(self) -> bool:
        if self.channel is None:
            return False
        if self.connected:
            return True

        self.connection_state = ConnectionState.CONNECTING
        try:
            await self.channel.connect()
            await self.channel.subscribe(self.show_id, self.state.apply_remote_event)
        except Exception as e:
            self.connection_state = ConnectionState.DISCONNECTED
            logger.warning("Realtime connect failed, continuing locally", show_id=self.show_id, error=str(e))
            return False

        self.connection_state = ConnectionState.CONNECTED
        return True

    async def disconnect(self) -> None:
        self.connection_state = ConnectionState.DISCONNECTED

    def _publish(self, event: SetlistEvent) -> None:
        if not self.connected:
            return
        self.supervisor.spawn(self.channel.publish(event), name="publish_setlist_event")

    # ------------------------------------------------------------------
    # Tracks
    # ------------------------------------------------------------------

    def use_tracks(self, stored_tracks: Sequence[Track], fallback_tracks: Sequence[Track] = ()) -> None:
        """Set the track universe: the stored snapshot, else freshly fetched tracks."""
        self.stored_tracks = list(stored_tracks or ())
        self.fallback_tracks = list(fallback_tracks or ())

    @staticmethod
    def compute_available_tracks(stored_tracks: Sequence[Track], setlist) -> List[Track]:
        return compute_available_tracks(stored_tracks, setlist)

    def available_tracks(self) -> List[Track]:
        universe = self.stored_tracks or self.fallback_tracks
        return self._memo.get(universe, self.state.entries)

    def _resolve(self, track_id: str) -> Optional[Track]:
        for tracks in (self.stored_tracks, self.fallback_tracks):
            for track in tracks:
                if track.id == track_id:
                    return track
        return None

    def select_track(self, track_id: Optional[str]) -> None:
        self.selected_track = track_id

    @property
    def setlist(self) -> List[SetlistEntry]:
        return list(self.state.entries)

    def seed(self, initial_songs: Sequence[Track]) -> int:
        return self.state.seed(initial_songs)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_song(self, track_id: Optional[str] = None) -> Optional[SetlistEntry]:
        """
        Add a song to the setlist.

        Uses the explicit id, else the selected track. Missing id, unknown
        track and duplicates are all no-ops that return None.
        """
        track_id = track_id or self.selected_track
        if not track_id:
            songs_added_total.labels(outcome="invalid").inc()
            return None

        if track_id in self.state:
            songs_added_total.labels(outcome="duplicate").inc()
            logger.debug("Song already in setlist", show_id=self.show_id, song_id=track_id)
            return None

        track = self._resolve(track_id)
        if track is None:
            songs_added_total.labels(outcome="unknown").inc()
            logger.info("Track not in artist catalog", show_id=self.show_id, song_id=track_id)
            return None

        entry = self.state.append(track)
        self.selected_track = None
        songs_added_total.labels(outcome="added").inc()
        logger.info("Song added to setlist", show_id=self.show_id, song_id=track_id, position=entry.position)

        self._publish(SetlistEvent(
            type="add_song",
            show_id=self.show_id,
            song_id=track.id,
            song=track,
            origin=self.state.node_id
        ))
        return entry

    @property
    def anonymous_vote_count(self) -> int:
        return self.quota.used(self.show_id, self.session_id)

    def vote(self, song_id: str) -> VoteResult:
        """
        Cast one vote.

        Raises:
            QuotaExceeded: anonymous session out of votes; login() has been
                triggered on the auth provider
        """
        anonymous = not self.auth.is_authenticated

        if anonymous and self.quota.exhausted(self.show_id, self.session_id):
            votes_total.labels(outcome="quota_exceeded").inc()
            logger.info("Anonymous vote limit reached", show_id=self.show_id, session_id=self.session_id)
            self.auth.login()
            raise QuotaExceeded(self.show_id, self.quota.limit)

        entry = self.state.increment(song_id)
        if entry is None:
            votes_total.labels(outcome="not_found").inc()
            return VoteResult(accepted=False, song_id=song_id, reason="song_not_in_setlist")

        remaining = None
        if anonymous:
            self.quota.charge(self.show_id, self.session_id)
            remaining = self.quota.remaining(self.show_id, self.session_id)

        votes_total.labels(outcome="accepted").inc()
        self._publish(SetlistEvent(
            type="vote",
            show_id=self.show_id,
            song_id=song_id,
            origin=self.state.node_id
        ))
        return VoteResult(
            accepted=True,
            song_id=song_id,
            votes=entry.votes,
            remaining_anonymous_votes=remaining
        )


class SetlistRegistry:
    """Shared per-show setlist state and the anonymous quota, one per process"""

    def __init__(
        self,
        anonymous_vote_limit: int = 3,
        channel: Optional[RealtimeChannel] = None,
        supervisor: Optional[TaskSupervisor] = None
    ):
        self.quota = AnonymousVoteQuota(anonymous_vote_limit)
        self.channel = channel
        self.supervisor = supervisor or TaskSupervisor()
        self._states: Dict[str, SetlistState] = {}

    def state_for(self, show_id: str) -> SetlistState:
        if show_id not in self._states:
            self._states[show_id] = SetlistState(show_id)
        return self._states[show_id]

    def engine_for(self, show_id: str, auth: AuthProvider, session_id: Optional[str] = None) -> SetlistVotingEngine:
        return SetlistVotingEngine(
            show_id=show_id,
            state=self.state_for(show_id),
            auth=auth,
            quota=self.quota,
            channel=self.channel,
            supervisor=self.supervisor,
            session_id=session_id
        )

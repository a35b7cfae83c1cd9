# escalada_client/store.py
"""
In-memory box state for one display surface.

`BoxStore` is the single source of truth for a surface, owned explicitly by whoever builds
the surface (no module-level map). It is written by:
- authoritative snapshots from the stream / state endpoint: always win, replace the whole box
- optimistic local writes issued on user action (or mirrored from other surfaces): marked
  `optimistic=True` until the next snapshot for that box overwrites them

There is no field-level merge between the two. Boxes are fully independent.

Results are the one exception to "snapshot replaces everything": the authenticated snapshot
carries the roster but no score/time maps, and scores arrive as SUBMIT_SCORE echoes. A
snapshot without score maps keeps the results already held for the same sessionId (the API
only clears scores together with rotating the session).
"""

# -------------------- Standard library imports --------------------
import logging
from typing import Any, Callable, Dict, Iterable

# -------------------- Third-party imports --------------------
from pydantic import BaseModel, Field

# -------------------- Local application imports --------------------
from escalada_client.messages import BoxSnapshot, TimerState

logger = logging.getLogger(__name__)

StoreListener = Callable[[int, "BoxState | None"], None]


class CompetitorRecord(BaseModel):
    name: str
    scores: list[float | None] = Field(default_factory=list)
    times: list[float | None] = Field(default_factory=list)
    marked: bool = False


class BoxState(BaseModel):
    box_id: int
    categorie: str = ""
    initiated: bool = False
    route_index: int = 1
    routes_count: int | None = None
    holds_count: int = 0
    holds_counts: list[int] = Field(default_factory=list)
    hold_count: float = 0.0
    current_climber: str = ""
    preparing_climber: str = ""
    timer_state: TimerState = "idle"
    remaining: float | None = None
    timer_preset: str | None = None
    time_criterion_enabled: bool = False
    box_version: int | None = None
    session_id: str | None = None
    competitors: dict[str, CompetitorRecord] = Field(default_factory=dict)
    # True while local (unconfirmed) writes are applied on top of the last snapshot.
    optimistic: bool = False

    @classmethod
    def from_snapshot(cls, snap: BoxSnapshot) -> "BoxState":
        competitors: dict[str, CompetitorRecord] = {}
        for entry in snap.competitors:
            name = entry.nume
            competitors[name] = CompetitorRecord(
                name=name,
                scores=list(snap.scores.get(name, [])),
                times=list(snap.times.get(name, [])),
                marked=entry.marked,
            )
        # Public projections carry scores without a roster.
        for name, series in snap.scores.items():
            if name not in competitors:
                competitors[name] = CompetitorRecord(
                    name=name, scores=list(series), times=list(snap.times.get(name, []))
                )
        return cls(
            box_id=snap.boxId,
            categorie=snap.categorie or "",
            initiated=snap.initiated,
            route_index=snap.routeIndex or 1,
            routes_count=snap.routesCount,
            holds_count=snap.holdsCount or 0,
            holds_counts=list(snap.holdsCounts or []),
            hold_count=snap.holdCount or 0.0,
            current_climber=snap.currentClimber or "",
            preparing_climber=snap.preparingClimber or "",
            timer_state=snap.timerState or "idle",
            remaining=snap.remaining,
            timer_preset=snap.timerPreset,
            time_criterion_enabled=snap.timeCriterionEnabled,
            box_version=snap.boxVersion,
            session_id=snap.sessionId,
            competitors=competitors,
        )

    def scores_by_name(self) -> dict[str, list[float | None]]:
        return {name: list(c.scores) for name, c in self.competitors.items()}

    def times_by_name(self) -> dict[str, list[float | None]]:
        return {name: list(c.times) for name, c in self.competitors.items()}


# Wire (camelCase) keys accepted in optimistic patches -> BoxState fields.
_PATCH_FIELDS: dict[str, str] = {
    "categorie": "categorie",
    "initiated": "initiated",
    "routeIndex": "route_index",
    "routesCount": "routes_count",
    "holdsCount": "holds_count",
    "holdsCounts": "holds_counts",
    "holdCount": "hold_count",
    "currentClimber": "current_climber",
    "preparingClimber": "preparing_climber",
    "timerState": "timer_state",
    "remaining": "remaining",
    "timerPreset": "timer_preset",
    "timeCriterionEnabled": "time_criterion_enabled",
}


def _keeps_results(snap: BoxSnapshot, previous: BoxState) -> bool:
    if snap.model_fields_set & {"scores", "times"}:
        return False
    return snap.sessionId is not None and snap.sessionId == previous.session_id


def _with_results(state: BoxState, previous: BoxState) -> BoxState:
    competitors = dict(state.competitors)
    for name, old in previous.competitors.items():
        if not any(s is not None for s in old.scores) and not any(t is not None for t in old.times):
            continue
        current = competitors.get(name)
        if current is None:
            competitors[name] = old.model_copy()
        else:
            competitors[name] = current.model_copy(update={"scores": list(old.scores), "times": list(old.times)})
    return state.model_copy(update={"competitors": competitors})


class BoxStore:
    """Per-surface map of box id -> BoxState with change listeners."""

    def __init__(self) -> None:
        self._boxes: Dict[int, BoxState] = {}
        self._listeners: list[StoreListener] = []

    # -------------------- reads --------------------
    def get(self, box_id: int) -> BoxState | None:
        return self._boxes.get(box_id)

    def box_ids(self) -> list[int]:
        return sorted(self._boxes)

    def all(self) -> Dict[int, BoxState]:
        """Shallow copy of the map (records themselves are replaced, never mutated)."""
        return dict(self._boxes)

    def credentials(self, box_id: int) -> tuple[str | None, int | None]:
        """Return (sessionId, boxVersion) last seen for the box."""
        box = self._boxes.get(box_id)
        if box is None:
            return None, None
        return box.session_id, box.box_version

    # -------------------- authoritative writes --------------------
    def apply_snapshot(self, snap: BoxSnapshot) -> BoxState:
        """Replace the box with the authority's view; drops any optimistic state."""
        state = BoxState.from_snapshot(snap)
        previous = self._boxes.get(snap.boxId)
        if previous is not None:
            if previous.optimistic:
                logger.debug("Snapshot for box %s superseded optimistic state", snap.boxId)
            if _keeps_results(snap, previous):
                state = _with_results(state, previous)
        self._boxes[snap.boxId] = state
        self._notify(snap.boxId, state)
        return state

    def replace_all(self, snaps: Iterable[BoxSnapshot]) -> None:
        """Replace the whole map (public full snapshots list every known box)."""
        fresh = {snap.boxId: BoxState.from_snapshot(snap) for snap in snaps}
        removed = [box_id for box_id in self._boxes if box_id not in fresh]
        self._boxes = fresh
        for box_id in removed:
            self._notify(box_id, None)
        for box_id, state in fresh.items():
            self._notify(box_id, state)

    def update_credentials(self, box_id: int, session_id: str | None, box_version: int | None) -> None:
        box = self._boxes.get(box_id)
        if box is None:
            box = BoxState(box_id=box_id)
        self._boxes[box_id] = box.model_copy(
            update={"session_id": session_id, "box_version": box_version}
        )

    # -------------------- command echoes --------------------
    def apply_score(
        self,
        box_id: int,
        competitor: str,
        score: float | None,
        registered_time: float | None = None,
    ) -> BoxState:
        """Record a confirmed SUBMIT_SCORE on the box's current route and mark the competitor."""
        box = self._boxes.get(box_id) or BoxState(box_id=box_id)
        idx = max(box.route_index - 1, 0)
        record = box.competitors.get(competitor) or CompetitorRecord(name=competitor)
        scores = list(record.scores)
        times = list(record.times)
        if score is not None:
            scores.extend([None] * (idx + 1 - len(scores)))
            scores[idx] = float(score)
        if registered_time is not None:
            times.extend([None] * (idx + 1 - len(times)))
            times[idx] = float(registered_time)
        competitors = dict(box.competitors)
        competitors[competitor] = record.model_copy(update={"scores": scores, "times": times, "marked": True})
        state = box.model_copy(update={"competitors": competitors})
        self._boxes[box_id] = state
        self._notify(box_id, state)
        return state

    def apply_echo(self, box_id: int, patch: Dict[str, Any]) -> BoxState | None:
        """
        Apply fields confirmed by a command echo (wire-style keys).

        Unlike optimistic writes this leaves the `optimistic` flag alone, and echoes for a box
        this surface has no record of are skipped (the snapshot that follows creates it).
        """
        box = self._boxes.get(box_id)
        if box is None:
            return None
        update = {_PATCH_FIELDS[k]: v for k, v in patch.items() if k in _PATCH_FIELDS}
        try:
            state = BoxState.model_validate({**box.model_dump(), **update})
        except ValueError as exc:
            logger.debug("Ignoring invalid echo for box %s: %s", box_id, exc)
            return box
        self._boxes[box_id] = state
        self._notify(box_id, state)
        return state

    # -------------------- optimistic writes --------------------
    def apply_optimistic(self, box_id: int, patch: Dict[str, Any]) -> BoxState:
        """
        Apply a local, unconfirmed patch (wire-style keys, e.g. {"timerState": "running"}).

        Unknown keys are ignored. The box is created if this surface has not seen it yet.
        """
        update = {_PATCH_FIELDS[k]: v for k, v in (patch or {}).items() if k in _PATCH_FIELDS}
        box = self._boxes.get(box_id) or BoxState(box_id=box_id)
        try:
            state = BoxState.model_validate({**box.model_dump(), **update, "optimistic": True})
        except ValueError as exc:
            logger.debug("Ignoring invalid optimistic patch for box %s: %s", box_id, exc)
            return box
        self._boxes[box_id] = state
        self._notify(box_id, state)
        return state

    def forget(self, box_id: int) -> None:
        if self._boxes.pop(box_id, None) is not None:
            self._notify(box_id, None)

    # -------------------- listeners --------------------
    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, box_id: int, state: BoxState | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(box_id, state)
            except Exception as exc:
                logger.error("Store listener failed for box %s: %s", box_id, exc, exc_info=True)

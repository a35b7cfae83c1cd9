# escalada_client/messages.py
"""
Wire messages exchanged with the Escalada API.

Every message is a pydantic model tagged by its `type` field; inbound stream payloads are
parsed through a discriminated union so handlers receive concrete types instead of loose dicts.

Inbound (WS):
- STATE_SNAPSHOT: authoritative per-box state (authenticated stream, also GET /state/{boxId})
- PUBLIC_STATE_SNAPSHOT / BOX_*_UPDATE: read-only public projection
- PING: liveness check, answered with PONG echoing the same timestamp
- SUBMIT_SCORE / PROGRESS_UPDATE / *_TIMER: echoes of accepted commands (authenticated stream)

Outbound:
- `*Command` models posted to `/api/cmd` (field names match the API's `Cmd` schema)
- PONG / REQUEST_STATE sent over the stream
"""

# -------------------- Standard library imports --------------------
import json
import logging
import math
import re
from typing import Annotated, Any, ClassVar, Literal, Union

# -------------------- Third-party imports --------------------
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)

logger = logging.getLogger(__name__)

_TIMER_PRESET_RE = re.compile(r"^\d{1,3}:[0-5]\d$")

TimerState = Literal["idle", "running", "paused"]


def _clean_series(value: Any) -> list[float | None]:
    # Keep only finite numbers; everything else (bools, strings, NaN) is "unset".
    if not isinstance(value, list):
        return []
    out: list[float | None] = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, (int, float)):
            out.append(None)
        elif not math.isfinite(item):
            out.append(None)
        else:
            out.append(float(item))
    return out


# ==================== INBOUND ====================
class CompetitorEntry(BaseModel):
    """Roster entry as sent by the API (`nume` is the competitor name)."""

    model_config = ConfigDict(extra="ignore")

    nume: str
    marked: bool = False
    club: str | None = None


class BoxSnapshot(BaseModel):
    """
    Box state as pushed by the authority.

    The authenticated snapshot carries `sessionId`/`boxVersion` and the roster; the public
    projection carries `scoresByName`/`timesByName` instead. Both shapes parse here.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    boxId: int
    categorie: str | None = ""
    initiated: bool = False
    routeIndex: int | None = 1
    routesCount: int | None = None
    holdsCount: int | None = 0
    holdsCounts: list[int] | None = None
    holdCount: float | None = 0.0
    currentClimber: str | None = ""
    preparingClimber: str | None = ""
    timerState: TimerState | None = "idle"
    remaining: float | None = None
    timerPreset: str | None = None
    timeCriterionEnabled: bool = False
    competitors: list[CompetitorEntry] = Field(default_factory=list)
    scores: dict[str, list[float | None]] = Field(
        default_factory=dict, validation_alias=AliasChoices("scores", "scoresByName")
    )
    times: dict[str, list[float | None]] = Field(
        default_factory=dict, validation_alias=AliasChoices("times", "timesByName")
    )
    sessionId: str | None = None
    boxVersion: int | None = None

    @field_validator("competitors", mode="before")
    @classmethod
    def _drop_bad_competitors(cls, value: Any) -> list:
        if not isinstance(value, list):
            return []
        return [
            item
            for item in value
            if isinstance(item, dict) and isinstance(item.get("nume"), str) and item["nume"].strip()
        ]

    @field_validator("scores", "times", mode="before")
    @classmethod
    def _clean_series_map(cls, value: Any) -> dict:
        if not isinstance(value, dict):
            return {}
        return {
            name: _clean_series(arr)
            for name, arr in value.items()
            if isinstance(name, str) and name.strip()
        }

    @field_validator("holdsCounts", mode="before")
    @classmethod
    def _clean_holds_counts(cls, value: Any) -> list | None:
        if value is None:
            return None
        if not isinstance(value, list):
            return []
        return [v for v in value if isinstance(v, int) and not isinstance(v, bool)]


class StateSnapshot(BoxSnapshot):
    type: Literal["STATE_SNAPSHOT"] = "STATE_SNAPSHOT"


class PublicStateSnapshot(BaseModel):
    type: Literal["PUBLIC_STATE_SNAPSHOT"] = "PUBLIC_STATE_SNAPSHOT"
    boxes: list[BoxSnapshot] = Field(default_factory=list)


class PublicBoxUpdate(BaseModel):
    type: Literal["BOX_STATUS_UPDATE", "BOX_FLOW_UPDATE", "BOX_RANKING_UPDATE"]
    box: BoxSnapshot


class Ping(BaseModel):
    type: Literal["PING"] = "PING"
    timestamp: Any = None


# Command echoes: the API rebroadcasts every accepted `/cmd` payload to the box's sockets
# (competitor name already resolved for SUBMIT_SCORE), then follows with a STATE_SNAPSHOT.
class CommandEcho(BaseModel):
    model_config = ConfigDict(extra="ignore")

    boxId: int
    sessionId: str | None = None


class ScoreEcho(CommandEcho):
    type: Literal["SUBMIT_SCORE"]
    competitor: str | None = None
    score: float | None = None
    registeredTime: float | None = None

    @field_validator("score", "registeredTime", mode="before")
    @classmethod
    def _finite_or_none(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)) and not math.isfinite(value):
            return None
        return value


class ProgressEcho(CommandEcho):
    type: Literal["PROGRESS_UPDATE"]
    delta: float | None = 1


class TimerEcho(CommandEcho):
    type: Literal["START_TIMER", "STOP_TIMER", "RESUME_TIMER"]


InboundMessage = Annotated[
    Union[StateSnapshot, PublicStateSnapshot, PublicBoxUpdate, Ping, ScoreEcho, ProgressEcho, TimerEcho],
    Field(discriminator="type"),
]
_inbound_adapter: TypeAdapter = TypeAdapter(InboundMessage)


def parse_inbound(raw: Any) -> InboundMessage | None:
    """
    Decode one stream payload.

    Returns None for anything that is not a known, well-formed message (bad JSON, non-object,
    unknown `type`, schema mismatch). Callers drop None; a bad frame never ends a stream.
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Dropping non-JSON stream payload")
            return None
    else:
        data = raw
    if not isinstance(data, dict):
        logger.debug("Dropping non-object stream payload")
        return None
    try:
        return _inbound_adapter.validate_python(data)
    except ValidationError as exc:
        logger.debug("Dropping stream payload type=%s: %s", data.get("type"), exc.error_count())
        return None


# ==================== OUTBOUND (stream) ====================
class Pong(BaseModel):
    type: Literal["PONG"] = "PONG"
    timestamp: Any = None


class RequestStateMessage(BaseModel):
    type: Literal["REQUEST_STATE"] = "REQUEST_STATE"
    boxId: int | None = None


def encode(message: BaseModel) -> str:
    return message.model_dump_json(exclude_none=True)


# ==================== OUTBOUND (commands) ====================
class BaseCommand(BaseModel):
    """
    Common shape of `/api/cmd` payloads.

    `sessionId`/`boxVersion` are normally left empty and filled in by the dispatcher from
    the state store. The class flags say which of them a command type carries at all.
    """

    model_config = ConfigDict(extra="forbid")

    sends_session: ClassVar[bool] = True
    sends_version: ClassVar[bool] = True

    boxId: int = Field(ge=0)
    sessionId: str | None = None
    boxVersion: int | None = None

    def to_payload(self) -> dict[str, Any]:
        payload = self.model_dump(exclude_none=True)
        if not self.sends_session:
            payload.pop("sessionId", None)
        if not self.sends_version:
            payload.pop("boxVersion", None)
        return payload


class InitRouteCommand(BaseCommand):
    sends_session: ClassVar[bool] = False
    sends_version: ClassVar[bool] = False

    type: Literal["INIT_ROUTE"] = "INIT_ROUTE"
    routeIndex: int = Field(ge=1)
    holdsCount: int = Field(ge=0)
    routesCount: int | None = Field(default=None, ge=1)
    holdsCounts: list[int] | None = None
    # Roster entries: {"nume": str, "marked": bool, "club": str?}
    competitors: list[dict[str, Any]] = Field(default_factory=list)
    timerPreset: str | None = None
    categorie: str | None = None


class StartTimerCommand(BaseCommand):
    type: Literal["START_TIMER"] = "START_TIMER"


class StopTimerCommand(BaseCommand):
    type: Literal["STOP_TIMER"] = "STOP_TIMER"


class ResumeTimerCommand(BaseCommand):
    type: Literal["RESUME_TIMER"] = "RESUME_TIMER"


class ProgressUpdateCommand(BaseCommand):
    type: Literal["PROGRESS_UPDATE"] = "PROGRESS_UPDATE"
    delta: float = 1


class RegisterTimeCommand(BaseCommand):
    type: Literal["REGISTER_TIME"] = "REGISTER_TIME"
    registeredTime: float = Field(ge=0)


class SubmitScoreCommand(BaseCommand):
    type: Literal["SUBMIT_SCORE"] = "SUBMIT_SCORE"
    score: float = Field(ge=0)
    competitor: str | None = None
    competitorIdx: int | None = None
    registeredTime: float | None = Field(default=None, ge=0)


class RequestStateCommand(BaseCommand):
    sends_version: ClassVar[bool] = False

    type: Literal["REQUEST_STATE"] = "REQUEST_STATE"


class RequestActiveCompetitorCommand(BaseCommand):
    type: Literal["REQUEST_ACTIVE_COMPETITOR"] = "REQUEST_ACTIVE_COMPETITOR"


class ResetBoxCommand(BaseCommand):
    sends_version: ClassVar[bool] = False

    type: Literal["RESET_BOX"] = "RESET_BOX"


class ResetPartialCommand(BaseCommand):
    type: Literal["RESET_PARTIAL"] = "RESET_PARTIAL"
    resetTimer: bool = False
    clearProgress: bool = False
    unmarkAll: bool = False


class SetTimeCriterionCommand(BaseCommand):
    type: Literal["SET_TIME_CRITERION"] = "SET_TIME_CRITERION"
    timeCriterionEnabled: bool


class SetTimerPresetCommand(BaseCommand):
    type: Literal["SET_TIMER_PRESET"] = "SET_TIMER_PRESET"
    timerPreset: str

    @field_validator("timerPreset")
    @classmethod
    def _check_preset(cls, value: str) -> str:
        value = value.strip()
        if not _TIMER_PRESET_RE.match(value):
            raise ValueError("timerPreset must be MM:SS")
        return value


def _normalize_decision(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


def _normalize_fingerprint(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


class SetTimeTiebreakDecisionCommand(BaseCommand):
    """Manual time tie-break for one specific tie situation (identified by its fingerprint)."""

    type: Literal["SET_TIME_TIEBREAK_DECISION"] = "SET_TIME_TIEBREAK_DECISION"
    timeTiebreakDecision: Literal["yes", "no"]
    timeTiebreakFingerprint: str = Field(min_length=1)

    @field_validator("timeTiebreakDecision", mode="before")
    @classmethod
    def _lower_decision(cls, value: Any) -> Any:
        return _normalize_decision(value)

    @field_validator("timeTiebreakFingerprint", mode="before")
    @classmethod
    def _strip_fingerprint(cls, value: Any) -> Any:
        return _normalize_fingerprint(value)


class SetPrevRoundsTiebreakDecisionCommand(BaseCommand):
    """Manual previous-rounds tie-break; optional order / rank map for the tied group."""

    type: Literal["SET_PREV_ROUNDS_TIEBREAK_DECISION"] = "SET_PREV_ROUNDS_TIEBREAK_DECISION"
    prevRoundsTiebreakDecision: Literal["yes", "no"]
    prevRoundsTiebreakFingerprint: str = Field(min_length=1)
    prevRoundsTiebreakOrder: list[str] = Field(default_factory=list)
    prevRoundsTiebreakRanksByName: dict[str, int] = Field(default_factory=dict)

    @field_validator("prevRoundsTiebreakDecision", mode="before")
    @classmethod
    def _lower_decision(cls, value: Any) -> Any:
        return _normalize_decision(value)

    @field_validator("prevRoundsTiebreakFingerprint", mode="before")
    @classmethod
    def _strip_fingerprint(cls, value: Any) -> Any:
        return _normalize_fingerprint(value)

    @field_validator("prevRoundsTiebreakOrder", mode="before")
    @classmethod
    def _dedupe_order(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        seen: set[str] = set()
        out: list[str] = []
        for item in value:
            name = item.strip() if isinstance(item, str) else ""
            if not name or name in seen:
                continue
            seen.add(name)
            out.append(name)
        return out

    @field_validator("prevRoundsTiebreakRanksByName", mode="before")
    @classmethod
    def _clean_ranks(cls, value: Any) -> dict[str, int]:
        if not isinstance(value, dict):
            return {}
        out: dict[str, int] = {}
        for raw_name, raw_rank in value.items():
            name = raw_name.strip() if isinstance(raw_name, str) else ""
            if not name or isinstance(raw_rank, bool):
                continue
            try:
                rank = float(raw_rank)
            except (TypeError, ValueError):
                continue
            if not math.isfinite(rank) or rank <= 0:
                continue
            out[name] = int(rank)
        return out


Command = Annotated[
    Union[
        InitRouteCommand,
        StartTimerCommand,
        StopTimerCommand,
        ResumeTimerCommand,
        ProgressUpdateCommand,
        RegisterTimeCommand,
        SubmitScoreCommand,
        RequestStateCommand,
        RequestActiveCompetitorCommand,
        ResetBoxCommand,
        ResetPartialCommand,
        SetTimeCriterionCommand,
        SetTimerPresetCommand,
        SetTimeTiebreakDecisionCommand,
        SetPrevRoundsTiebreakDecisionCommand,
    ],
    Field(discriminator="type"),
]

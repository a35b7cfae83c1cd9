# escalada_client/commands/dispatcher.py
"""
Command dispatch to `POST /api/cmd` with optimistic concurrency.

Flow for one command:
1. Attach the box's last known `sessionId` / `boxVersion` from the store (per command type)
2. POST with per-attempt timeout; 5xx / network errors retried with backoff (commands.fetch)
3. Map the reply:
   - 200 {"status": "ok"}                      -> CommandResult
   - 200 {"status": "ignored", "reason": ...}  -> stale: recover once (configured types) or raise
   - 401 / 403                                 -> clear auth, AuthRequiredError
   - other 4xx                                 -> CommandRejected (server `detail`)
   - 5xx after retries                         -> TransientCommandError

Stale recovery = GET /api/state/{boxId}, apply to the store, resubmit exactly once.
Historically only SET_TIMER_PRESET did this; which types opt in is configuration.
"""

# -------------------- Standard library imports --------------------
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

# -------------------- Third-party imports --------------------
import httpx
from pydantic import ValidationError

# -------------------- Local application imports --------------------
from escalada_client.commands.fetch import Sleep, request_with_retry, response_detail
from escalada_client.commands.session import AuthSession
from escalada_client.errors import (
    AuthRequiredError,
    CommandError,
    CommandRejected,
    StaleCommandError,
    TransientCommandError,
)
from escalada_client.messages import (
    BaseCommand,
    InitRouteCommand,
    ProgressUpdateCommand,
    RegisterTimeCommand,
    RequestActiveCompetitorCommand,
    RequestStateCommand,
    ResetBoxCommand,
    ResetPartialCommand,
    ResumeTimerCommand,
    SetPrevRoundsTiebreakDecisionCommand,
    SetTimeCriterionCommand,
    SetTimerPresetCommand,
    SetTimeTiebreakDecisionCommand,
    StartTimerCommand,
    StateSnapshot,
    StopTimerCommand,
    SubmitScoreCommand,
)
from escalada_client.store import BoxState, BoxStore

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    command_type: str
    box_id: int
    status: str = "ok"
    body: Dict[str, Any] = field(default_factory=dict)
    # True when the command only went through after a refetch + resubmit.
    recovered: bool = False


class CommandDispatcher:
    def __init__(
        self,
        store: BoxStore,
        http: httpx.AsyncClient,
        *,
        api_base: str,
        auth: Optional[AuthSession] = None,
        retries: int = 3,
        timeout: float = 5.0,
        base_delay: float = 1.0,
        stale_recovery: Iterable[str] = ("SET_TIMER_PRESET",),
        sleep: Sleep = asyncio.sleep,
    ):
        self.store = store
        self.http = http
        self.api_base = api_base.rstrip("/")
        self.auth = auth or AuthSession()
        self.retries = retries
        self.timeout = timeout
        self.base_delay = base_delay
        self.stale_recovery = {t.upper() for t in stale_recovery}
        self._sleep = sleep

    # ==================== CORE ====================
    async def submit(self, command: BaseCommand) -> CommandResult:
        command_type = command.type
        box_id = command.boxId
        recoverable = command_type in self.stale_recovery

        # A recovery-enabled command never goes out blind: fetch the session first.
        if recoverable and command.sends_session and self.store.credentials(box_id)[0] is None:
            logger.info("No sessionId for box %s, fetching state before %s", box_id, command_type)
            await self.fetch_state(box_id)

        body = await self._post(command)
        reason = _stale_reason(body)
        if reason is None:
            return CommandResult(command_type, box_id, body=body)

        if not recoverable:
            logger.warning("Command %s for box %s ignored: %s", command_type, box_id, reason)
            raise StaleCommandError(command_type, reason)

        logger.info("Command %s for box %s was stale (%s), refreshing and resubmitting", command_type, box_id, reason)
        await self.fetch_state(box_id)
        body = await self._post(command)
        retry_reason = _stale_reason(body)
        if retry_reason is not None:
            logger.warning(
                "Command %s for box %s still stale after refresh: %s", command_type, box_id, retry_reason
            )
            raise StaleCommandError(command_type, retry_reason)
        return CommandResult(command_type, box_id, body=body, recovered=True)

    async def fetch_state(self, box_id: int) -> BoxState:
        """GET /state/{boxId} and replace the store's record with it."""
        response = await request_with_retry(
            self.http,
            "GET",
            f"{self.api_base}/state/{box_id}",
            headers=self.auth.headers(),
            retries=self.retries,
            timeout=self.timeout,
            base_delay=self.base_delay,
            sleep=self._sleep,
            command_type="REQUEST_STATE",
        )
        body = self._check_response("REQUEST_STATE", response)
        # Only a snapshot of this box, carrying its sessionId, may replace the stored record.
        if not body or body.get("boxId", box_id) != box_id or "sessionId" not in body:
            raise CommandError("REQUEST_STATE", detail="invalid state snapshot", status_code=response.status_code)
        body.setdefault("boxId", box_id)
        body["type"] = "STATE_SNAPSHOT"
        try:
            snapshot = StateSnapshot.model_validate(body)
        except ValidationError as exc:
            raise CommandError("REQUEST_STATE", detail=f"invalid state snapshot: {exc.error_count()} errors") from exc
        return self.store.apply_snapshot(snapshot)

    # ==================== HELPERS ====================
    def _payload(self, command: BaseCommand) -> Dict[str, Any]:
        payload = command.to_payload()
        session_id, box_version = self.store.credentials(command.boxId)
        if command.sends_session and session_id is not None:
            payload["sessionId"] = session_id
        if command.sends_version and box_version is not None:
            payload["boxVersion"] = box_version
        return payload

    async def _post(self, command: BaseCommand) -> Dict[str, Any]:
        payload = self._payload(command)
        logger.debug("Sending %s for box %s (version=%s)", command.type, command.boxId, payload.get("boxVersion"))
        response = await request_with_retry(
            self.http,
            "POST",
            f"{self.api_base}/cmd",
            json=payload,
            headers=self.auth.headers(),
            retries=self.retries,
            timeout=self.timeout,
            base_delay=self.base_delay,
            sleep=self._sleep,
            command_type=command.type,
        )
        return self._check_response(command.type, response)

    def _check_response(self, command_type: str, response: httpx.Response) -> Dict[str, Any]:
        status = response.status_code
        if status in (401, 403):
            self.auth.clear()
            raise AuthRequiredError(command_type, detail=response_detail(response) or "auth_required", status_code=status)
        if 400 <= status < 500:
            raise CommandRejected(command_type, detail=response_detail(response), status_code=status)
        if status >= 500:
            raise TransientCommandError(command_type, detail=response_detail(response), status_code=status)
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    # ==================== TYPED HELPERS ====================
    async def init_route(
        self,
        box_id: int,
        *,
        route_index: int,
        holds_count: int,
        competitors: list[dict],
        routes_count: Optional[int] = None,
        holds_counts: Optional[list[int]] = None,
        timer_preset: Optional[str] = None,
        categorie: Optional[str] = None,
    ) -> CommandResult:
        return await self.submit(
            InitRouteCommand(
                boxId=box_id,
                routeIndex=route_index,
                holdsCount=holds_count,
                routesCount=routes_count,
                holdsCounts=holds_counts,
                competitors=competitors,
                timerPreset=timer_preset,
                categorie=categorie,
            )
        )

    async def start_timer(self, box_id: int) -> CommandResult:
        return await self.submit(StartTimerCommand(boxId=box_id))

    async def stop_timer(self, box_id: int) -> CommandResult:
        return await self.submit(StopTimerCommand(boxId=box_id))

    async def resume_timer(self, box_id: int) -> CommandResult:
        return await self.submit(ResumeTimerCommand(boxId=box_id))

    async def update_progress(self, box_id: int, delta: float = 1) -> CommandResult:
        return await self.submit(ProgressUpdateCommand(boxId=box_id, delta=delta))

    async def register_time(self, box_id: int, registered_time: float) -> CommandResult:
        return await self.submit(RegisterTimeCommand(boxId=box_id, registeredTime=registered_time))

    async def submit_score(
        self,
        box_id: int,
        score: float,
        competitor: Optional[str] = None,
        *,
        competitor_idx: Optional[int] = None,
        registered_time: Optional[float] = None,
    ) -> CommandResult:
        return await self.submit(
            SubmitScoreCommand(
                boxId=box_id,
                score=score,
                competitor=competitor,
                competitorIdx=competitor_idx,
                registeredTime=registered_time,
            )
        )

    async def request_state(self, box_id: int) -> CommandResult:
        return await self.submit(RequestStateCommand(boxId=box_id))

    async def request_active_competitor(self, box_id: int) -> CommandResult:
        return await self.submit(RequestActiveCompetitorCommand(boxId=box_id))

    async def reset_box(self, box_id: int) -> CommandResult:
        return await self.submit(ResetBoxCommand(boxId=box_id))

    async def reset_partial(
        self,
        box_id: int,
        *,
        reset_timer: bool = False,
        clear_progress: bool = False,
        unmark_all: bool = False,
    ) -> CommandResult:
        return await self.submit(
            ResetPartialCommand(
                boxId=box_id,
                resetTimer=reset_timer,
                clearProgress=clear_progress,
                unmarkAll=unmark_all,
            )
        )

    async def set_time_criterion(self, box_id: int, enabled: bool) -> CommandResult:
        return await self.submit(SetTimeCriterionCommand(boxId=box_id, timeCriterionEnabled=enabled))

    async def set_timer_preset(self, box_id: int, preset: str) -> CommandResult:
        return await self.submit(SetTimerPresetCommand(boxId=box_id, timerPreset=preset))

    async def set_time_tiebreak_decision(
        self, box_id: int, decision: str, fingerprint: str
    ) -> CommandResult:
        return await self.submit(
            SetTimeTiebreakDecisionCommand(
                boxId=box_id,
                timeTiebreakDecision=decision,
                timeTiebreakFingerprint=fingerprint,
            )
        )

    async def set_prev_rounds_tiebreak_decision(
        self,
        box_id: int,
        decision: str,
        fingerprint: str,
        *,
        order: Optional[list[str]] = None,
        ranks_by_name: Optional[Dict[str, int]] = None,
    ) -> CommandResult:
        return await self.submit(
            SetPrevRoundsTiebreakDecisionCommand(
                boxId=box_id,
                prevRoundsTiebreakDecision=decision,
                prevRoundsTiebreakFingerprint=fingerprint,
                prevRoundsTiebreakOrder=order or [],
                prevRoundsTiebreakRanksByName=ranks_by_name or {},
            )
        )


def _stale_reason(body: Dict[str, Any]) -> Optional[str]:
    if body.get("status") != "ignored":
        return None
    return str(body.get("reason") or "stale_version")

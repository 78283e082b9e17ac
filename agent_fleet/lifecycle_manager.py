"""
Lifecycle Manager for agent-fleet.

This module handles:
- Polling every session through the SessionManager on a fixed interval
- Deciding each session's status from live signals (runtime liveness, agent
  activity, PR / CI / review state)
- Reactions to status transitions, with per-(session, reaction) attempt
  tracking and escalation to a human
- Routing notifications to notifiers by priority tier

Status decision order (first match wins):
1. Runtime dead                      -> killed
2. Agent waiting for input           -> needs_input
3. Agent process gone                -> killed
4. PR state from the SCM             -> merged / ci_failed / changes_requested /
                                        mergeable / approved / review_pending / pr_open
5. spawning / stuck / needs_input    -> working
6. Otherwise the status is unchanged

A failing activity probe keeps ``stuck`` and ``needs_input`` as they are.
All state lives on the instance and is only mutated from the event loop
thread, so no locking is needed.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional, Union

from agent_fleet.errors import SessionNotFoundError
from agent_fleet.events.types import (
    EventPriority,
    EventType,
    OrchestratorEvent,
    create_event,
)
from agent_fleet.metadata import MetadataStore
from agent_fleet.models import (
    TERMINAL_STATUSES,
    ActivityState,
    CIStatus,
    PRState,
    ReviewDecision,
    Session,
    SessionStatus,
    utc_now,
)
from agent_fleet.plugins import PluginRegistry, PluginSlot, supports
from agent_fleet.utils.fs import FileSystemError

if TYPE_CHECKING:
    from agent_fleet.config import OrchestratorConfig, ProjectConfig, ReactionConfig
    from agent_fleet.events.bus import EventBus
    from agent_fleet.events.persistence import EventLog
    from agent_fleet.logger import FleetLogger
    from agent_fleet.session_manager import SessionManager

logger = logging.getLogger(__name__)

SYSTEM_SESSION_ID = "system"
ALL_COMPLETE_REACTION = "all-complete"


STATUS_EVENT_TYPES: dict[SessionStatus, EventType] = {
    SessionStatus.WORKING: EventType.SESSION_WORKING,
    SessionStatus.PR_OPEN: EventType.PR_CREATED,
    SessionStatus.CI_FAILED: EventType.CI_FAILING,
    SessionStatus.REVIEW_PENDING: EventType.REVIEW_PENDING,
    SessionStatus.CHANGES_REQUESTED: EventType.REVIEW_CHANGES_REQUESTED,
    SessionStatus.APPROVED: EventType.REVIEW_APPROVED,
    SessionStatus.MERGEABLE: EventType.MERGE_READY,
    SessionStatus.MERGED: EventType.MERGE_COMPLETED,
    SessionStatus.NEEDS_INPUT: EventType.SESSION_NEEDS_INPUT,
    SessionStatus.STUCK: EventType.SESSION_STUCK,
    SessionStatus.ERRORED: EventType.SESSION_ERRORED,
    SessionStatus.KILLED: EventType.SESSION_KILLED,
    SessionStatus.TERMINATED: EventType.SESSION_TERMINATED,
}

EVENT_REACTION_KEYS: dict[EventType, str] = {
    EventType.CI_FAILING: "ci-failed",
    EventType.REVIEW_CHANGES_REQUESTED: "changes-requested",
    EventType.MERGE_READY: "approved-and-green",
    EventType.SESSION_STUCK: "agent-stuck",
    EventType.SESSION_NEEDS_INPUT: "agent-needs-input",
    EventType.SESSION_KILLED: "agent-exited",
    EventType.SUMMARY_ALL_COMPLETE: ALL_COMPLETE_REACTION,
}

_DURATION_RE = re.compile(r"^(\d+)(s|m|h|d)$")
_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}

_URGENT_WORDS = ("stuck", "needs_input", "errored")
_ACTION_WORDS = ("approved", "ready", "merged", "completed")
_WARNING_WORDS = ("fail", "changes_requested", "conflicts")


def parse_duration(value: Optional[str]) -> float:
    """
    Parse "30s" / "10m" / "1h" / "2d" into seconds.

    Anything else parses to 0, which disables time-based escalation.
    """
    if not isinstance(value, str):
        return 0.0
    match = _DURATION_RE.match(value.strip())
    if not match:
        return 0.0
    amount, unit = match.groups()
    return float(int(amount) * _DURATION_UNITS[unit])


def infer_priority(event_type: Union[EventType, str]) -> EventPriority:
    """Pick a notification tier from keywords in the event type."""
    text = event_type.value if isinstance(event_type, EventType) else str(event_type)
    if any(word in text for word in _URGENT_WORDS):
        return EventPriority.URGENT
    if any(word in text for word in _ACTION_WORDS):
        return EventPriority.ACTION
    if any(word in text for word in _WARNING_WORDS):
        return EventPriority.WARNING
    return EventPriority.INFO


def reaction_key_for_status(status: SessionStatus) -> Optional[str]:
    event_type = STATUS_EVENT_TYPES.get(status)
    return EVENT_REACTION_KEYS.get(event_type) if event_type else None


@dataclass
class ReactionTracker:
    """Attempts made for one (session, reaction key). Never persisted."""
    attempts: int = 0
    first_triggered_at: datetime = field(default_factory=utc_now)


@dataclass
class ReactionResult:
    """What a reaction did."""
    reaction_key: str
    action: str
    success: bool
    escalated: bool = False
    message: Optional[str] = None


class LifecycleManager:
    """
    Drives session status transitions and the reaction policy.

    Transitions are detected by comparing the tracked status of a session
    with the status decided from its live signals. Only actual transitions
    have side effects: metadata update, one log entry, one event, and then
    either a reaction or a human notification.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        registry: PluginRegistry,
        session_manager: SessionManager,
        event_logger: Optional[FleetLogger] = None,
        event_bus: Optional[EventBus] = None,
        event_log: Optional[EventLog] = None,
        metadata: Optional[MetadataStore] = None,
    ) -> None:
        """
        Initialize the LifecycleManager.

        Args:
            config: OrchestratorConfig with reactions, routing and timeouts.
            registry: PluginRegistry for runtime/agent/scm/notifier backends.
            session_manager: SessionManager used for get/list/send.
            event_logger: Optional JSONL logger; closed by stop().
            event_bus: Optional in-process bus every event is published to.
            event_log: Optional JSONL event log every event is appended to.
            metadata: Store receiving status updates; defaults to one over
                config.sessions_path.
        """
        self.config = config
        self.registry = registry
        self.session_manager = session_manager
        self.event_logger = event_logger
        self.event_bus = event_bus
        self.event_log = event_log
        self.metadata = metadata or MetadataStore(config.sessions_path)

        self._states: dict[str, SessionStatus] = {}
        self._trackers: dict[tuple[str, str], ReactionTracker] = {}
        self._all_complete_emitted = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    def _log(
        self,
        message: str,
        level: str = "info",
        session_id: Optional[str] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        """Log an entry if an event logger is configured."""
        if self.event_logger:
            self.event_logger.log(message, level=level, session_id=session_id, data=data, source="lifecycle")

    @property
    def action_timeout(self) -> float:
        return self.config.action_timeout_seconds

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def check(self, session_id: str) -> SessionStatus:
        """
        Re-evaluate one session now.

        Raises:
            SessionNotFoundError: The session has no metadata.
        """
        session = await self.session_manager.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return await self._check_session(session)

    def get_states(self) -> dict[str, SessionStatus]:
        """Snapshot of tracked statuses; changing it does not affect the manager."""
        return dict(self._states)

    def get_reaction_tracker(self, session_id: str, reaction_key: str) -> Optional[ReactionTracker]:
        """Copy of the attempt tracker for (session, key), if any."""
        tracker = self._trackers.get((session_id, reaction_key))
        return replace(tracker) if tracker else None

    @property
    def running(self) -> bool:
        return self._stop_event is not None and not self._stop_event.is_set()

    def start(self, interval_seconds: Optional[float] = None) -> None:
        """
        Start polling: one pass now, then one every interval.

        Must be called from a running event loop. Calling it while already
        running does nothing.
        """
        if self.running:
            return
        interval = interval_seconds if interval_seconds is not None else self.config.poll_interval_seconds
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run(interval, self._stop_event))
        self._log("Lifecycle polling started", data={"interval_seconds": interval})

    def stop(self) -> None:
        """
        Stop polling and close the event logger.

        Safe to call at any time and more than once; an in-flight pass is
        allowed to finish but no new pass starts.
        """
        if self._stop_event is not None and not self._stop_event.is_set():
            self._stop_event.set()
            self._log("Lifecycle polling stopped")
        if self.event_logger:
            self.event_logger.close()

    async def wait(self) -> None:
        """Wait for the polling task to finish after stop()."""
        if self._task is not None:
            await self._task

    async def _run(self, interval: float, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.poll_all()
            except Exception:
                logger.exception("Poll pass failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def poll_all(self) -> None:
        """
        Run one pass over every session.

        Terminal sessions are skipped unless their tracked status differs
        from the listed one. One session failing does not affect the others.
        """
        sessions = await self.session_manager.list()

        to_check = [s for s in sessions if self._needs_check(s)]
        results = await asyncio.gather(
            *(self._check_session(s) for s in to_check),
            return_exceptions=True,
        )
        for session, result in zip(to_check, results):
            if isinstance(result, BaseException):
                logger.error("Check failed for session %s: %s", session.id, result)
                self._log(f"Check failed: {result}", level="error", session_id=session.id)

        live_ids = {s.id for s in sessions}
        live_ids.add(SYSTEM_SESSION_ID)
        for session_id in [sid for sid in self._states if sid not in live_ids]:
            del self._states[session_id]
        for key in [k for k in self._trackers if k[0] not in live_ids]:
            del self._trackers[key]

        statuses = [self._states.get(s.id, s.status) for s in sessions]
        if sessions and all(status in TERMINAL_STATUSES for status in statuses):
            if not self._all_complete_emitted:
                self._all_complete_emitted = True
                await self._emit_all_complete(len(sessions))
        else:
            self._all_complete_emitted = False

    def _needs_check(self, session: Session) -> bool:
        if session.status not in TERMINAL_STATUSES:
            return True
        tracked = self._states.get(session.id)
        return tracked is not None and tracked != session.status

    async def _emit_all_complete(self, count: int) -> None:
        event = create_event(
            EventType.SUMMARY_ALL_COMPLETE,
            SYSTEM_SESSION_ID,
            "",
            f"All {count} session(s) have finished",
            priority=EventPriority.ACTION,
            data={"sessions": count},
        )
        self._publish(event)
        reaction = self.config.reaction_for(ALL_COMPLETE_REACTION)
        if reaction is not None and reaction.action and reaction.enabled:
            await self._execute_reaction(None, SYSTEM_SESSION_ID, "", ALL_COMPLETE_REACTION, reaction)
        else:
            await self._notify_human(event)

    # ------------------------------------------------------------------
    # Status determination
    # ------------------------------------------------------------------

    async def _check_session(self, session: Session) -> SessionStatus:
        old_status = self._states.get(session.id, session.status)
        new_status = await self.determine_status(session)
        if new_status != old_status:
            await self._transition(session, old_status, new_status)
        else:
            self._states[session.id] = new_status
        return new_status

    def _project(self, session: Session) -> Optional[ProjectConfig]:
        return self.config.get_project(session.project_id)

    def _plugin(self, slot: PluginSlot, name: Optional[str], project: Optional[ProjectConfig]) -> Any:
        if not name:
            override = getattr(project, slot.value, None) if project else None
            name = override or getattr(self.config.defaults, slot.value)
        return self.registry.get(slot, name)

    def _scm(self, project: Optional[ProjectConfig]) -> Any:
        if project is None or project.scm is None:
            return None
        return self.registry.get(PluginSlot.SCM, project.scm.plugin)

    async def determine_status(self, session: Session) -> SessionStatus:
        """Decide the status a session should have from its live signals."""
        project = self._project(session)
        handle = session.runtime_handle
        runtime = self._plugin(PluginSlot.RUNTIME, handle.runtime_name if handle else None, project)
        agent = self._plugin(PluginSlot.AGENT, session.metadata.get("agent"), project)

        if handle is not None and runtime is not None:
            try:
                alive = await runtime.is_alive(handle)
            except Exception as e:
                logger.warning("Liveness probe failed for %s: %s", session.id, e)
                alive = True
            if not alive:
                session.activity = ActivityState.EXITED
                if session.status == SessionStatus.MERGED:
                    return SessionStatus.MERGED
                return SessionStatus.KILLED

        if handle is not None and runtime is not None and agent is not None:
            try:
                output = await runtime.get_output(handle)
                if output:
                    activity = agent.detect_activity(output)
                    session.activity = activity
                    if activity == ActivityState.WAITING_INPUT:
                        return SessionStatus.NEEDS_INPUT
                    if activity == ActivityState.EXITED:
                        return SessionStatus.KILLED
                    if not await agent.is_process_running(handle):
                        session.activity = ActivityState.EXITED
                        return SessionStatus.KILLED
            except Exception as e:
                logger.debug("Activity probe failed for %s: %s", session.id, e)
                if session.status in (SessionStatus.STUCK, SessionStatus.NEEDS_INPUT):
                    return session.status

        pr_status = await self._pr_status(session, project)
        if pr_status is not None:
            return pr_status

        if session.status in (SessionStatus.SPAWNING, SessionStatus.STUCK, SessionStatus.NEEDS_INPUT):
            return SessionStatus.WORKING
        return session.status

    async def _pr_status(self, session: Session, project: Optional[ProjectConfig]) -> Optional[SessionStatus]:
        scm = self._scm(project)
        if scm is None:
            return None

        if session.pr is None and supports(scm, "detect_pr"):
            try:
                session.pr = await scm.detect_pr(session, project)
            except Exception as e:
                logger.debug("PR detection failed for %s: %s", session.id, e)
            if session.pr is not None:
                self._persist(session.id, {"pr": session.pr.url})

        pr = session.pr
        if pr is None:
            return None

        try:
            state = await scm.get_pr_state(pr)
            if state == PRState.MERGED:
                return SessionStatus.MERGED
            if state == PRState.CLOSED:
                return SessionStatus.KILLED

            ci = await scm.get_ci_summary(pr)
            if ci == CIStatus.FAILING:
                return SessionStatus.CI_FAILED

            review = await scm.get_review_decision(pr)
            if review == ReviewDecision.CHANGES_REQUESTED:
                return SessionStatus.CHANGES_REQUESTED
            if review == ReviewDecision.APPROVED:
                readiness = await scm.get_mergeability(pr)
                if (readiness.mergeable and readiness.ci_passing
                        and readiness.approved and readiness.no_conflicts):
                    return SessionStatus.MERGEABLE
                return SessionStatus.APPROVED
            if review == ReviewDecision.PENDING:
                return SessionStatus.REVIEW_PENDING
            return SessionStatus.PR_OPEN
        except Exception as e:
            logger.warning("SCM query failed for %s: %s", session.id, e)
            return None

    # ------------------------------------------------------------------
    # Transitions, reactions, notifications
    # ------------------------------------------------------------------

    def _persist(self, session_id: str, updates: dict[str, str]) -> None:
        try:
            if self.metadata.exists(session_id):
                self.metadata.update(session_id, updates)
        except (FileSystemError, ValueError) as e:
            logger.warning("Could not update metadata for %s: %s", session_id, e)

    async def _transition(self, session: Session, old_status: SessionStatus, new_status: SessionStatus) -> None:
        self._states[session.id] = new_status
        self._persist(session.id, {"status": new_status.value})
        session.status = new_status

        old_key = reaction_key_for_status(old_status)
        if old_key:
            self._trackers.pop((session.id, old_key), None)

        self._log(
            f"Status changed: {old_status.value} -> {new_status.value}",
            session_id=session.id,
            data={"old_status": old_status.value, "new_status": new_status.value},
        )

        event_type = STATUS_EVENT_TYPES.get(new_status)
        if event_type is None:
            return

        event = create_event(
            event_type,
            session.id,
            session.project_id,
            f"Session {session.id}: {old_status.value} -> {new_status.value}",
            priority=infer_priority(event_type),
            data={"old_status": old_status.value, "new_status": new_status.value},
        )
        self._publish(event)

        reaction_key = EVENT_REACTION_KEYS.get(event_type)
        if reaction_key:
            reaction = self.config.reaction_for(reaction_key, session.project_id)
            if reaction is not None and reaction.action and reaction.enabled:
                await self._execute_reaction(session, session.id, session.project_id, reaction_key, reaction)
                return

        await self._notify_human(event)

    def _should_escalate(self, tracker: ReactionTracker, reaction: ReactionConfig) -> bool:
        if reaction.retries is not None and tracker.attempts > reaction.retries:
            return True

        escalate_after = reaction.escalate_after
        if isinstance(escalate_after, str) and escalate_after.strip().isdigit():
            escalate_after = int(escalate_after)
        if isinstance(escalate_after, int) and not isinstance(escalate_after, bool):
            return tracker.attempts > escalate_after
        if isinstance(escalate_after, str):
            duration = parse_duration(escalate_after)
            if duration > 0:
                elapsed = (utc_now() - tracker.first_triggered_at).total_seconds()
                return elapsed > duration
        return False

    async def _execute_reaction(
        self,
        session: Optional[Session],
        session_id: str,
        project_id: str,
        reaction_key: str,
        reaction: ReactionConfig,
    ) -> ReactionResult:
        tracker = self._trackers.setdefault((session_id, reaction_key), ReactionTracker())
        tracker.attempts += 1
        action = reaction.action or "notify"

        if self._should_escalate(tracker, reaction):
            event = create_event(
                EventType.REACTION_ESCALATED,
                session_id,
                project_id,
                f"Reaction '{reaction_key}' escalated after {tracker.attempts} attempt(s)",
                priority=EventPriority.URGENT,
                data={"reaction": reaction_key, "attempts": tracker.attempts, "action": action},
            )
            self._publish(event)
            self._log(event.message, level="warn", session_id=session_id, data=event.data)
            await self._notify_human(event)
            return ReactionResult(reaction_key, action, success=False, escalated=True)

        if action == "send-to-agent":
            success = False
            if reaction.message:
                success = await self._bounded(
                    self.session_manager.send(session_id, reaction.message),
                    f"send-to-agent for {session_id}",
                )
            return ReactionResult(reaction_key, action, success=success, message=reaction.message)

        if action == "auto-merge":
            success = await self._auto_merge(session)
            event = create_event(
                EventType.REACTION_TRIGGERED,
                session_id,
                project_id,
                f"Reaction '{reaction_key}': auto-merge {'succeeded' if success else 'failed'}",
                priority=EventPriority.ACTION,
                data={"reaction": reaction_key, "action": action, "success": success},
            )
            self._publish(event)
            await self._notify_human(event)
            return ReactionResult(reaction_key, action, success=success)

        priority = EventPriority(reaction.priority) if reaction.priority else EventPriority.INFO
        event = create_event(
            EventType.REACTION_TRIGGERED,
            session_id,
            project_id,
            reaction.message or f"Reaction '{reaction_key}' triggered for {session_id}",
            priority=priority,
            data={"reaction": reaction_key, "action": action},
        )
        self._publish(event)
        await self._notify_human(event)
        return ReactionResult(reaction_key, action, success=True)

    async def _auto_merge(self, session: Optional[Session]) -> bool:
        if session is None or session.pr is None:
            return False
        scm = self._scm(self._project(session))
        if scm is None:
            logger.warning("No SCM configured to merge PR for %s", session.id)
            return False
        return await self._bounded(scm.merge_pr(session.pr), f"merge of {session.pr.url}")

    async def _bounded(self, awaitable: Any, what: str) -> bool:
        """Await with the action timeout. Failures are logged and reported as False."""
        try:
            await asyncio.wait_for(awaitable, timeout=self.action_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("Timed out after %ss: %s", self.action_timeout, what)
        except Exception as e:
            logger.warning("Failed: %s: %s", what, e)
        return False

    async def _notify_human(self, event: OrchestratorEvent) -> None:
        """Dispatch to the notifiers routed for the event's priority. Info is never dispatched."""
        if event.priority == EventPriority.INFO:
            return
        names = self.config.notification_routing.for_priority(event.priority.value)
        notifiers = []
        for name in names:
            notifier = self.registry.get(PluginSlot.NOTIFIER, name)
            if notifier is None:
                logger.debug("Notifier '%s' is not registered", name)
                continue
            notifiers.append((name, notifier))
        await asyncio.gather(*(
            self._bounded(notifier.notify(event), f"notifier {name}")
            for name, notifier in notifiers
        ))

    def _publish(self, event: OrchestratorEvent) -> None:
        if self.event_bus is not None:
            self.event_bus.emit(event)
        if self.event_log is not None:
            self.event_log.append(event)

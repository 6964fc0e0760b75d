"""Authoritative task/session status model.

Task statuses move along ``TASK_TRANSITIONS``. Apart from the human "start"
(``todo -> planning``) every move is driven either by a session reaching a
terminal status while the task is in that session's phase, or by an explicit
human decision (approve plan, re-plan, approve, request changes, dispatch fix).

The machine is the only writer of the liveness tracker: a task is live exactly
while one of its sessions is ``running``. Failed sessions never auto-retry;
they leave the task where it is and raise an error notice until someone calls
:meth:`PhaseStateMachine.retry`.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from studio.errors import InvalidTransition, InvariantViolation, UnknownEntityError
from studio.liveness import ExecutionLivenessTracker
from studio.models import (
    PHASE_FOR_STATUS,
    SESSION_FORWARD,
    SESSION_TERMINAL_STATUSES,
    TASK_TERMINAL_STATUSES,
    TASK_TRANSITIONS,
    VALID_SESSION_PHASES,
    VALID_TASK_STATUSES,
    SessionOutcome,
    SessionRow,
    TaskRow,
    session_from_mapping,
    sort_sessions,
    task_from_mapping,
    utcnow,
)
from studio.notices import NoticeBoard

log = logging.getLogger(__name__)

TransitionListener = Callable[[dict[str, Any]], None]

# Where a task goes when the session of its current phase completes successfully.
_NEXT_ON_SUCCESS = {
    "planning": "planning_review",
    "implementation": "ai_review",
    "review": "review",
}

_PHASE_LABELS = {
    "planning": "Planning",
    "implementation": "Implementation",
    "review": "AI review",
}


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in TASK_TRANSITIONS.get(from_status, frozenset())


class PhaseStateMachine:
    def __init__(
        self,
        liveness: ExecutionLivenessTracker | None = None,
        *,
        notices: NoticeBoard | None = None,
    ) -> None:
        self.liveness = liveness if liveness is not None else ExecutionLivenessTracker()
        self.notices = notices
        self._tasks: dict[str, TaskRow] = {}
        self._sessions: dict[str, SessionRow] = {}
        self._listeners: list[TransitionListener] = []
        self.outcomes: list[SessionOutcome] = []

    # -- Observers ------------------------------------------------------------

    def on_transition(self, listener: TransitionListener) -> Callable[[], None]:
        """Register a listener for status events; returns a remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _emit(self, event: dict[str, Any]) -> None:
        event.setdefault("ts", utcnow())
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("Transition listener failed for %s", event.get("type"))

    def _notify(self, level: str, message: str, task_id: str | None = None) -> None:
        if self.notices is not None:
            self.notices.push(level, message, task_id=task_id)

    # -- Snapshots ------------------------------------------------------------

    def load(
        self, tasks: Iterable[Mapping[str, Any]], sessions: Iterable[Mapping[str, Any]] = ()
    ) -> None:
        """Replace all state with snapshots from the task service."""
        task_rows = {row["id"]: row for row in map(task_from_mapping, tasks)}
        session_rows: dict[str, SessionRow] = {}
        for data in sessions:
            row = session_from_mapping(data)
            if row["task_id"] not in task_rows:
                log.warning("Dropping session %s for unknown task %s", row["id"], row["task_id"])
                continue
            session_rows[row["id"]] = row

        running_by_task: dict[str, list[str]] = {}
        for row in session_rows.values():
            if row["status"] == "running":
                running_by_task.setdefault(row["task_id"], []).append(row["id"])
        for task_id, ids in running_by_task.items():
            if len(ids) > 1:
                log.warning("Task %s has %d running sessions in snapshot", task_id, len(ids))

        self._tasks = task_rows
        self._sessions = session_rows
        self.reconcile_liveness()

    def reconcile_liveness(self) -> None:
        self.liveness.recompute(self._sessions.values())

    def add_task(self, task: Mapping[str, Any]) -> TaskRow:
        row = task_from_mapping(task)
        if row["id"] in self._tasks:
            raise InvariantViolation(f"Task {row['id']} already exists")
        self._tasks[row["id"]] = row
        return dict(row)  # type: ignore[return-value]

    # -- Reads ----------------------------------------------------------------

    def _task(self, task_id: str) -> TaskRow:
        task = self._tasks.get(task_id)
        if task is None:
            raise UnknownEntityError("task", task_id)
        return task

    def _session(self, session_id: str) -> SessionRow:
        session = self._sessions.get(session_id)
        if session is None:
            raise UnknownEntityError("session", session_id)
        return session

    def has_task(self, task_id: str) -> bool:
        return task_id in self._tasks

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def task(self, task_id: str) -> TaskRow:
        return dict(self._task(task_id))  # type: ignore[return-value]

    def tasks(self) -> list[TaskRow]:
        rows = sorted(self._tasks.values(), key=lambda t: (t["created_at"], t["id"]))
        return [dict(t) for t in rows]  # type: ignore[misc]

    def session(self, session_id: str) -> SessionRow:
        return dict(self._session(session_id))  # type: ignore[return-value]

    def sessions_for(self, task_id: str) -> list[SessionRow]:
        rows = [s for s in self._sessions.values() if s["task_id"] == task_id]
        return [dict(s) for s in sort_sessions(rows)]  # type: ignore[misc]

    def running_session(self, task_id: str) -> SessionRow | None:
        for session in self._sessions.values():
            if session["task_id"] == task_id and session["status"] == "running":
                return dict(session)  # type: ignore[return-value]
        return None

    # -- Task transitions -----------------------------------------------------

    def transition(self, task_id: str, to_status: str, *, reason: str = "") -> TaskRow:
        """Move a task along one edge of the lifecycle graph."""
        if to_status not in VALID_TASK_STATUSES:
            raise ValueError(f"Invalid task status '{to_status}'")
        task = self._task(task_id)
        from_status = task["status"]
        if not can_transition(from_status, to_status):
            raise InvalidTransition(task_id, from_status, to_status)

        task["status"] = to_status
        task["updated_at"] = utcnow()
        log.info("Task %s: %s -> %s (%s)", task_id, from_status, to_status, reason or "-")
        self._emit(
            {
                "type": "task.status_changed",
                "task_id": task_id,
                "from_status": from_status,
                "to_status": to_status,
                "reason": reason,
            }
        )
        return dict(task)  # type: ignore[return-value]

    def apply_remote_status(self, task_id: str, status: str) -> bool:
        """Adopt a status change reported by the task service.

        ``done`` is never left this way; reopening is an explicit action of the
        service, followed by a snapshot reload.
        """
        task = self._task(task_id)
        if task["status"] == status:
            return False
        if task["status"] in TASK_TERMINAL_STATUSES:
            log.warning(
                "Task %s is %s; ignoring remote status '%s'", task_id, task["status"], status
            )
            return False
        self.transition(task_id, status, reason="remote")
        return True

    def _ensure_idle(self, task_id: str) -> None:
        running = self.running_session(task_id)
        if running is not None:
            raise InvariantViolation(
                f"Task {task_id} already has running session {running['id']}"
            )

    def _dispatch(self, task_id: str, to_status: str, reason: str) -> SessionRow:
        """Transition into an AI-working status and start that phase's session."""
        task = self._task(task_id)
        self._ensure_idle(task_id)
        if not can_transition(task["status"], to_status):
            raise InvalidTransition(task_id, task["status"], to_status)
        self.transition(task_id, to_status, reason=reason)
        return self.begin_session(task_id, PHASE_FOR_STATUS[to_status])

    def start(self, task_id: str) -> SessionRow:
        """Human "start": ``todo -> planning`` and a planning session."""
        return self._dispatch(task_id, "planning", "start")

    def request_replan(self, task_id: str) -> SessionRow:
        return self._dispatch(task_id, "planning", "re-plan requested")

    def approve_plan(self, task_id: str) -> SessionRow:
        return self._dispatch(task_id, "in_progress", "plan approved")

    def dispatch_fix(self, task_id: str) -> SessionRow:
        """Send a task needing fixes back to implementation with a new session."""
        return self._dispatch(task_id, "in_progress", "fix dispatched")

    def approve(self, task_id: str) -> TaskRow:
        self._ensure_idle(task_id)
        return self.transition(task_id, "done", reason="approved")

    def request_changes(self, task_id: str) -> TaskRow:
        self._ensure_idle(task_id)
        return self.transition(task_id, "fix", reason="changes requested")

    def retry(self, task_id: str) -> SessionRow:
        """Explicitly re-dispatch the current phase's session after a failure."""
        task = self._task(task_id)
        phase = PHASE_FOR_STATUS.get(task["status"])
        if phase is None:
            raise InvariantViolation(
                f"Task {task_id} is '{task['status']}'; no agent phase to retry"
            )
        return self.begin_session(task_id, phase)

    # -- Sessions -------------------------------------------------------------

    def _advance_session(self, session: SessionRow, status: str, error: str | None = None) -> None:
        if status not in SESSION_FORWARD[session["status"]]:
            raise InvariantViolation(
                f"Session {session['id']}: cannot move from '{session['status']}' to '{status}'"
            )
        session["status"] = status
        now = utcnow()
        if status == "running":
            session["started_at"] = session["started_at"] or now
        if status in SESSION_TERMINAL_STATUSES:
            session["completed_at"] = now
            session["error"] = error

    def _session_started(self, session: SessionRow) -> None:
        self.liveness.mark_running(session["task_id"])
        log.info(
            "Session %s (%s) running for task %s",
            session["id"],
            session["phase"],
            session["task_id"],
        )
        self._emit(
            {
                "type": "session.started",
                "session_id": session["id"],
                "task_id": session["task_id"],
                "phase": session["phase"],
                "status": session["status"],
            }
        )

    def begin_session(
        self, task_id: str, phase: str, *, session_id: str | None = None
    ) -> SessionRow:
        """Create a session for the task's current phase and mark it running.

        Rejected if the task already has a running session or is not in the
        status that runs *phase*.
        """
        if phase not in VALID_SESSION_PHASES:
            raise ValueError(f"Invalid session phase '{phase}'")
        task = self._task(task_id)
        self._ensure_idle(task_id)
        expected = PHASE_FOR_STATUS.get(task["status"])
        if expected != phase:
            raise InvariantViolation(
                f"Task {task_id} is '{task['status']}'; cannot run a {phase} session"
            )
        session_id = session_id or str(uuid.uuid4())
        if session_id in self._sessions:
            raise InvariantViolation(f"Session {session_id} already exists")

        session: SessionRow = {
            "id": session_id,
            "task_id": task_id,
            "phase": phase,
            "status": "pending",
            "created_at": utcnow(),
            "started_at": None,
            "completed_at": None,
            "error": None,
        }
        self._sessions[session_id] = session
        self._advance_session(session, "running")
        self._session_started(session)
        return dict(session)  # type: ignore[return-value]

    def register_session(self, data: Mapping[str, Any]) -> SessionRow:
        """Adopt a session announced by the task service.

        Re-announcing a known session only moves it forward; a terminal
        session is never brought back to ``running``.
        """
        row = session_from_mapping(data)
        self._task(row["task_id"])

        existing = self._sessions.get(row["id"])
        if existing is not None:
            if row["status"] != existing["status"] and row["status"] in SESSION_FORWARD[
                existing["status"]
            ]:
                if row["status"] == "running":
                    self._ensure_idle(row["task_id"])
                    self._advance_session(existing, "running")
                    self._session_started(existing)
                else:
                    self._finish(existing, row["status"], row.get("error"))
            return dict(existing)  # type: ignore[return-value]

        if row["status"] == "running":
            self._ensure_idle(row["task_id"])
        self._sessions[row["id"]] = row
        if row["status"] == "running":
            self._session_started(row)
        return dict(row)  # type: ignore[return-value]

    def finish_session(
        self, session_id: str, success: bool, error: str | None = None
    ) -> SessionOutcome | None:
        """Record a session's terminal signal and advance its task.

        Returns None when the session was already terminal, so duplicate
        terminal frames never produce a second transition.
        """
        session = self._session(session_id)
        if session["status"] in SESSION_TERMINAL_STATUSES:
            log.debug("Session %s already %s; ignoring finish", session_id, session["status"])
            return None

        # A review that ran to completion but did not approve reports success=false
        # without an error; that is a verdict, not a crash.
        findings = session["phase"] == "review" and not success and not error
        status = "completed" if success or findings else "failed"
        return self._finish(session, status, error, success=success, findings=findings)

    def abort_session(self, session_id: str) -> SessionOutcome | None:
        session = self._session(session_id)
        if session["status"] in SESSION_TERMINAL_STATUSES:
            return None
        return self._finish(session, "aborted", "aborted")

    def _finish(
        self,
        session: SessionRow,
        status: str,
        error: str | None,
        *,
        success: bool | None = None,
        findings: bool = False,
    ) -> SessionOutcome:
        if success is None:
            success = status == "completed"
        task_id = session["task_id"]
        self._advance_session(session, status, None if success else error)
        if self.running_session(task_id) is None:
            self.liveness.mark_idle(task_id)

        outcome: SessionOutcome = {
            "session_id": session["id"],
            "task_id": task_id,
            "phase": session["phase"],
            "status": status,
            "success": success,
            "error": None if success else error,
        }
        self.outcomes.append(outcome)
        self._emit({"type": "session.ended", **outcome})

        task = self._task(task_id)
        label = _PHASE_LABELS[session["phase"]]
        if PHASE_FOR_STATUS.get(task["status"]) != session["phase"]:
            log.info(
                "Session %s (%s) ended while task %s is %s; status unchanged",
                session["id"],
                session["phase"],
                task_id,
                task["status"],
            )
            return outcome

        if success:
            self.transition(task_id, _NEXT_ON_SUCCESS[session["phase"]], reason=f"{label} finished")
            self._notify("success", f"{label} session completed", task_id)
        elif findings:
            self.transition(task_id, "fix", reason="AI review found issues")
            self._notify("warning", "AI review found issues to fix", task_id)
        elif status == "aborted":
            self._notify("warning", f"{label} session aborted", task_id)
        else:
            log.warning("Session %s failed for task %s: %s", session["id"], task_id, error)
            self._notify("error", f"{label} session failed: {error or 'unknown error'}", task_id)
        return outcome

"""
Exam session lifecycle on the test-taker side.

The lifecycle is a small state machine: ``transition`` is a pure function
over ``SessionStatus`` and ``SessionEvent``, and the controller feeds events
through a queue so that a timer expiry, a violation threshold and a manual
submit racing each other are applied one at a time, in arrival order. The
first finalizing event wins; later ones find a terminal status and are
dropped.
"""
import asyncio
import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

from ..core.exceptions import (
    CapabilityError,
    InvalidTransitionError,
    NegotiationError,
    SessionConflictError,
    SubmissionConfirmationRequired,
)
from ..schemas.proctoring import AnswerRecord, ExamDefinition, ProctorSessionResponse, SessionStatus, SubmitResultResponse
from .capabilities import CapabilityAcquisitionStepper, MediaPlatform
from .integrity import IntegrityMonitor
from .peer import PeerMediaSession
from .progress import ProgressReporter, ProgressState
from .state import SessionStateStore
from .timer import SessionTimer

logger = logging.getLogger(__name__)

Answer = Union[str, List[str]]


class SessionEvent(str, Enum):
    START = "start"
    SUBMIT = "submit"
    AUTO_SUBMIT = "auto-submit"
    TERMINATE = "terminate"


TRANSITIONS: Dict[Tuple[SessionStatus, SessionEvent], SessionStatus] = {
    (SessionStatus.SETTING_UP, SessionEvent.START): SessionStatus.ACTIVE,
    (SessionStatus.SETTING_UP, SessionEvent.TERMINATE): SessionStatus.TERMINATED,
    (SessionStatus.ACTIVE, SessionEvent.SUBMIT): SessionStatus.SUBMITTED,
    (SessionStatus.ACTIVE, SessionEvent.AUTO_SUBMIT): SessionStatus.AUTO_SUBMITTED,
    (SessionStatus.ACTIVE, SessionEvent.TERMINATE): SessionStatus.TERMINATED,
}


def transition(status: SessionStatus, event: SessionEvent) -> SessionStatus:
    status, event = SessionStatus(status), SessionEvent(event)
    try:
        return TRANSITIONS[(status, event)]
    except KeyError:
        raise InvalidTransitionError(status.value, event.value)


def is_answered(answer: Any) -> bool:
    if answer is None:
        return False
    if isinstance(answer, (list, tuple)):
        return len(answer) > 0
    return len(str(answer).strip()) > 0


@dataclass
class SubmitOutcome:
    status: SessionStatus
    records: List[AnswerRecord]
    response: Optional[SubmitResultResponse] = None

    @property
    def redirect(self) -> bool:
        return bool(self.response and self.response.redirect)


@dataclass
class _QueuedEvent:
    event: SessionEvent
    params: Dict[str, Any] = field(default_factory=dict)
    future: Optional[asyncio.Future] = None


class ExamSessionController:
    def __init__(
        self,
        exam: ExamDefinition,
        student_id: str,
        api,
        relay,
        store: Optional[SessionStateStore] = None,
        student_name: Optional[str] = None,
        peer: Optional[PeerMediaSession] = None,
        clock: Callable[[], float] = time.time,
        on_exit: Optional[Callable[[str], Any]] = None,
        on_warning: Optional[Callable[[str, int], None]] = None,
        on_tick: Optional[Callable[[int], None]] = None,
        threshold: Optional[int] = None,
    ):
        self.exam = exam
        self.student_id = student_id
        self.student_name = student_name
        self.api = api
        self.relay = relay
        self.store = store or SessionStateStore()
        self.peer = peer
        self.clock = clock
        self.on_exit = on_exit

        self.status = SessionStatus.SETTING_UP
        self.session: Optional[ProctorSessionResponse] = None
        self.answers: Dict[str, Answer] = {}
        self.time_spent: Dict[str, float] = {qid: 0.0 for qid in exam.question_ids}
        self.current_index = 0
        self.entered_at: Optional[float] = None
        self.exit_reason: Optional[str] = None
        self.termination_reason: Optional[str] = None
        self.outcome: Optional[SubmitOutcome] = None
        self.messages: List[Dict[str, Any]] = []

        self.timer = SessionTimer(
            exam.id, student_id, exam.duration_minutes * 60, self.store,
            on_expire=self._on_time_expired, on_tick=on_tick, clock=clock,
        )
        self.integrity = IntegrityMonitor(
            exam.id, student_id, self.store, api=api, relay=relay,
            on_threshold=self._on_threshold, on_warning=on_warning,
            threshold=threshold, clock=clock, student_name=student_name,
        )
        self.progress = ProgressReporter(exam.id, student_id, self.progress_state, api=api, relay=relay, clock=clock)

        self._queue: Deque[_QueuedEvent] = deque()
        self._drain_task: Optional[asyncio.Task] = None
        self._media_task: Optional[asyncio.Task] = None
        self._joined = False

        if hasattr(relay, "on"):
            self.bind_relay_events()

    @classmethod
    async def create(cls, exam_id: str, student_id: str, api, relay, platform: Optional[MediaPlatform] = None,
                     **kwargs) -> "ExamSessionController":
        """Fetch the exam definition and wire a media session when a platform is given"""
        exam = await api.get_exam(exam_id)
        if platform is not None and "peer" not in kwargs:
            kwargs["peer"] = PeerMediaSession(exam.id, student_id, relay, media_source=platform.open_tracks)
        return cls(exam, student_id, api, relay, **kwargs)

    # queue

    async def dispatch(self, event: SessionEvent, **params) -> Any:
        """Queue a lifecycle event and wait for its result.

        Called from inside a handler, the event is queued behind the current
        one without a future and None is returned immediately; a failure is
        logged when the event is drained.
        """
        reentrant = self._drain_task is not None and self._drain_task is asyncio.current_task()
        future = None if reentrant else asyncio.get_event_loop().create_future()
        item = _QueuedEvent(SessionEvent(event), params, future)
        self._queue.append(item)

        if reentrant:
            return None
        if self._drain_task is not None:
            return await item.future

        await self._drain()
        return await item.future

    async def _drain(self):
        self._drain_task = asyncio.current_task()
        try:
            while self._queue:
                item = self._queue.popleft()
                try:
                    result = await self._handle(item.event, item.params)
                except Exception as e:
                    if item.future is None:
                        logger.error(f"Queued {item.event.value} event failed: {e}", exc_info=True)
                    elif not item.future.done():
                        item.future.set_exception(e)
                    continue
                if item.future is not None and not item.future.done():
                    item.future.set_result(result)
        finally:
            self._drain_task = None

    async def _handle(self, event: SessionEvent, params: Dict[str, Any]) -> Any:
        if event == SessionEvent.START:
            return await self._handle_start(params.get("stepper"))
        if event == SessionEvent.SUBMIT:
            return await self._handle_submit(params.get("confirm", False))
        if event == SessionEvent.AUTO_SUBMIT:
            return await self._handle_auto_submit(params.get("reason", "auto-submit"))
        if event == SessionEvent.TERMINATE:
            return await self._handle_terminate(params.get("reason"))
        raise InvalidTransitionError(self.status.value, event.value)

    # public lifecycle

    async def prepare(self, platform: MediaPlatform, **kwargs) -> CapabilityAcquisitionStepper:
        """Join the relay scope, then build a stepper that publishes every step change over it."""
        await self._join_relay()
        kwargs.setdefault("clock", self.clock)
        return CapabilityAcquisitionStepper(platform, self.exam.id, self.student_id, emit_status=self.relay.emit, **kwargs)

    async def start(self, stepper: Optional[CapabilityAcquisitionStepper] = None) -> ProctorSessionResponse:
        return await self.dispatch(SessionEvent.START, stepper=stepper)

    async def submit(self, confirm: bool = False) -> SubmitOutcome:
        return await self.dispatch(SessionEvent.SUBMIT, confirm=confirm)

    async def auto_submit(self, reason: str) -> Optional[SubmitOutcome]:
        return await self.dispatch(SessionEvent.AUTO_SUBMIT, reason=reason)

    async def terminate(self, reason: Optional[str] = None):
        return await self.dispatch(SessionEvent.TERMINATE, reason=reason)

    async def _on_threshold(self):
        await self.auto_submit("violation-threshold")

    async def _on_time_expired(self):
        await self.auto_submit("time-expired")

    # handlers

    async def _handle_start(self, stepper: Optional[CapabilityAcquisitionStepper]) -> ProctorSessionResponse:
        next_status = transition(self.status, SessionEvent.START)
        if stepper is not None and not stepper.is_complete():
            step = stepper.current_step()
            raise CapabilityError(step.value, f"capability {step.value} has not been granted")

        session = await self.api.start_session(self.exam.id, self.student_id, self.student_name)
        if SessionStatus(session.status).is_terminal:
            raise SessionConflictError(f"session {session.session_id} is already {session.status.value}")

        self.session = session
        self.status = next_status
        self.timer.activate(session.start_instant)
        self.entered_at = self.clock()
        logger.info(
            f"Exam {self.exam.id} {'resumed' if session.resumed else 'started'} for student {self.student_id} "
            f"({self.timer.remaining_seconds()}s remaining)"
        )

        if stepper is not None:
            for grant in stepper.grants:
                try:
                    await self.api.record_capability(session.session_id, grant.capability, grant.granted, grant.timestamp)
                except Exception as e:
                    logger.error(f"Error recording capability {grant.capability.value}: {e}")

        await self._join_relay()
        try:
            await self.relay.emit("student-join-exam", {
                "examId": self.exam.id,
                "studentId": self.student_id,
                "studentName": self.student_name,
                "sessionId": session.session_id,
            })
        except Exception as e:
            logger.warning(f"Failed to announce exam start on relay: {e}")

        if self.exam.prevent_tab_switch:
            await self.integrity.start(session.session_id, session.violation_count)
        self.progress.start(session.session_id)
        self.timer.start()
        if self.peer is not None:
            self._media_task = asyncio.create_task(self._start_media())
        return session

    async def _handle_submit(self, confirm: bool) -> SubmitOutcome:
        next_status = transition(self.status, SessionEvent.SUBMIT)
        if self.answered_count() == 0 and not confirm:
            raise SubmissionConfirmationRequired("No answers recorded; confirm to submit anyway")

        now = self.clock()
        self._finalize_question_time(now)
        records = self.build_answer_records()
        response = await self.api.submit_result(
            self.session.session_id, self.exam.id, records,
            time_taken=int(self.timer.elapsed_seconds(now)),
        )
        if response.redirect:
            logger.info(f"Exam {self.exam.id} was already submitted: {response.message}")

        self.status = next_status
        self.outcome = SubmitOutcome(self.status, records, response)
        await self._finalize()
        await self._exit("submitted")
        return self.outcome

    async def _handle_auto_submit(self, reason: str) -> Optional[SubmitOutcome]:
        try:
            self.status = transition(self.status, SessionEvent.AUTO_SUBMIT)
        except InvalidTransitionError:
            logger.debug(f"Ignoring auto-submit ({reason}) in status {self.status.value}")
            return None

        now = self.clock()
        self._finalize_question_time(now)
        records = self.build_answer_records()
        response = None
        try:
            response = await self.api.submit_result(
                self.session.session_id, self.exam.id, records,
                time_taken=int(self.timer.elapsed_seconds(now)),
                auto_submitted=True, reason=reason,
            )
        except Exception as e:
            logger.error(f"Error auto-submitting exam {self.exam.id} ({reason}): {e}")

        self.outcome = SubmitOutcome(self.status, records, response)
        await self._finalize()
        await self._exit(reason)
        return self.outcome

    async def _handle_terminate(self, reason: Optional[str]):
        try:
            self.status = transition(self.status, SessionEvent.TERMINATE)
        except InvalidTransitionError:
            logger.debug(f"Ignoring termination in status {self.status.value}")
            return None

        self.termination_reason = reason or "Terminated by proctor"
        logger.warning(f"Exam {self.exam.id} terminated for student {self.student_id}: {self.termination_reason}")
        await self._finalize()
        await self._exit("terminated")
        return self.status

    # answers and navigation

    @property
    def question_ids(self) -> List[str]:
        return list(self.exam.question_ids)

    @property
    def current_question_id(self) -> Optional[str]:
        if not self.exam.question_ids:
            return None
        return self.exam.question_ids[self.current_index]

    def answered_count(self) -> int:
        return sum(1 for qid in self.exam.question_ids if is_answered(self.answers.get(qid)))

    def progress_state(self) -> ProgressState:
        return ProgressState(
            answered=self.answered_count(),
            total=len(self.exam.question_ids),
            current_question_index=self.current_index,
            time_remaining_seconds=self.timer.remaining_seconds(),
        )

    def _require_active(self, action: str):
        if self.status != SessionStatus.ACTIVE:
            raise InvalidTransitionError(self.status.value, action)

    async def record_answer(self, question_id: str, answer: Answer):
        self._require_active("answer")
        if question_id not in self.time_spent:
            raise ValueError(f"Unknown question {question_id}")
        self.answers[question_id] = answer
        await self.progress.notify_answer()

    async def navigate(self, index: int):
        self._require_active("navigate")
        if not 0 <= index < len(self.exam.question_ids):
            raise IndexError(f"Question index {index} out of range")
        self._finalize_question_time(self.clock())
        self.current_index = index
        await self.progress.notify_navigation()

    async def next_question(self):
        if self.current_index + 1 < len(self.exam.question_ids):
            await self.navigate(self.current_index + 1)

    async def previous_question(self):
        if self.current_index > 0:
            await self.navigate(self.current_index - 1)

    def _finalize_question_time(self, now: float):
        """Credit the question on screen with the time since it was entered, then re-stamp."""
        qid = self.current_question_id
        if qid is not None and self.entered_at is not None:
            self.time_spent[qid] += max(0.0, now - self.entered_at)
        self.entered_at = now

    def build_answer_records(self) -> List[AnswerRecord]:
        """One record per exam question; unanswered questions carry an empty answer."""
        records = []
        for qid in self.exam.question_ids:
            answer = self.answers.get(qid)
            records.append(AnswerRecord(
                question_id=qid,
                answer=answer if is_answered(answer) else "",
                time_spent=int(round(self.time_spent.get(qid, 0.0))),
            ))
        return records

    # teardown

    async def _start_media(self):
        try:
            await self.peer.start()
        except NegotiationError as e:
            logger.error(f"Media session for exam {self.exam.id} could not be negotiated: {e}")
        except Exception as e:
            logger.error(f"Media session for exam {self.exam.id} failed: {e}", exc_info=True)

    async def _finalize(self):
        self.timer.stop()
        self.integrity.stop()
        self.progress.stop()

        task, self._media_task = self._media_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
        if self.peer is not None:
            await self.peer.stop()

        try:
            await self.relay.emit("student-leave-exam", {
                "examId": self.exam.id,
                "studentId": self.student_id,
                "studentName": self.student_name,
                "status": self.status.value,
            })
        except Exception as e:
            logger.warning(f"Failed to announce exam end on relay: {e}")

        self.store.clear(self.exam.id, self.student_id)

    async def _exit(self, reason: str):
        self.exit_reason = reason
        if self.on_exit is None:
            return
        result = self.on_exit(reason)
        if inspect.isawaitable(result):
            await result

    # relay events

    async def _join_relay(self) -> bool:
        if self._joined:
            return True
        try:
            ack = await self.relay.join_exam(self.exam.id, self.student_id)
        except Exception as e:
            logger.warning(f"Failed to join relay for exam {self.exam.id}: {e}")
            return False
        self._joined = not (isinstance(ack, dict) and ack.get("success") is False)
        if not self._joined:
            logger.warning(f"Relay refused join for exam {self.exam.id}: {ack.get('error')}")
        return self._joined

    def _is_mine(self, data: Any) -> bool:
        return (
            isinstance(data, dict)
            and str(data.get("examId")) == str(self.exam.id)
            and str(data.get("studentId")) == str(self.student_id)
        )

    def bind_relay_events(self):
        self.relay.on("student-session-terminated", self.handle_session_terminated)
        self.relay.on("proctor-message", self.handle_proctor_message)
        self.relay.on("proctor-joined", self.handle_proctor_joined)
        self.relay.on("webrtc-answer", self.handle_webrtc_answer)
        self.relay.on("webrtc-ice-candidate", self.handle_webrtc_candidate)

    async def handle_session_terminated(self, data):
        if self._is_mine(data):
            await self.terminate(data.get("reason"))

    async def handle_proctor_message(self, data):
        if self._is_mine(data):
            self.messages.append(data)
            logger.info(f"Proctor message ({data.get('type', 'info')}): {data.get('message')}")

    async def handle_proctor_joined(self, data):
        if self._is_mine(data) and self.peer is not None and self.status == SessionStatus.ACTIVE:
            # negotiation waits on relay traffic, so it cannot run inside the relay callback
            self._media_task = asyncio.create_task(self._restart_media())

    async def _restart_media(self):
        try:
            await self.peer.restart()
        except NegotiationError as e:
            logger.error(f"Renegotiation for exam {self.exam.id} failed: {e}")

    async def handle_webrtc_answer(self, data):
        if self._is_mine(data) and self.peer is not None:
            await self.peer.handle_answer(data.get("payload") or {})

    async def handle_webrtc_candidate(self, data):
        if self._is_mine(data) and self.peer is not None:
            try:
                await self.peer.handle_remote_candidate(data.get("payload") or {})
            except Exception as e:
                logger.warning(f"Discarding malformed ICE candidate: {e}")

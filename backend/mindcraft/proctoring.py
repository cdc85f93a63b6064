# backend/mindcraft/proctoring.py
"""
Proctoring monitor.

The exam page forwards browser events (visibility, clipboard, keydown,
fullscreen and context menu) to the session's EventBus. The monitor's
handlers are subscribed only while the attempt is running; the reply tells the
page whether the default browser action must be suppressed.
"""
import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .config import VIOLATION_LIMIT, VIOLATION_SUBMIT_DELAY_SECS
from .lifecycle import AttemptController
from .schemas import ProctorDecision, ProctorEvent, Violation

logger = logging.getLogger(__name__)

Handler = Callable[[ProctorEvent, ProctorDecision], None]

SHORTCUT_KEYS = {"c", "v", "x", "a"}
CLIPBOARD_EVENTS = ("copy", "cut", "paste")
CODE_INPUT_ELEMENTS = {"TEXTAREA"}


class EventBus:
    def __init__(self):
        self._lock = threading.Lock()
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._handlers[event_type].append(handler)

        def unsubscribe():
            with self._lock:
                if handler in self._handlers[event_type]:
                    self._handlers[event_type].remove(handler)

        return unsubscribe

    def subscriber_count(self) -> int:
        with self._lock:
            return sum(len(h) for h in self._handlers.values())

    def dispatch(self, event: ProctorEvent) -> ProctorDecision:
        with self._lock:
            handlers = list(self._handlers.get(event.type, ()))
        decision = ProctorDecision()
        for handler in handlers:
            handler(event, decision)
        return decision


class ProctoringMonitor:
    def __init__(
        self,
        controller: AttemptController,
        current_question_is_coding: Callable[[], bool],
        limit: int = VIOLATION_LIMIT,
        submit_delay: float = VIOLATION_SUBMIT_DELAY_SECS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._controller = controller
        self._current_question_is_coding = current_question_is_coding
        self._limit = limit
        self._submit_delay = submit_delay
        self._clock = clock
        self._lock = threading.Lock()
        self._count = 0
        self._violations: List[Violation] = []
        self.fullscreen = False

    @property
    def count(self) -> int:
        return self._count

    @property
    def violations(self) -> List[Violation]:
        with self._lock:
            return list(self._violations)

    def subscriptions(self):
        return [
            ("fullscreenchange", self.on_fullscreen_change),
            ("visibilitychange", self.on_visibility_change),
            ("contextmenu", self.on_context_menu),
            ("keydown", self.on_keydown),
        ] + [(event_type, self.on_clipboard) for event_type in CLIPBOARD_EVENTS]

    @contextmanager
    def attached(self, bus: EventBus):
        unsubscribers = [bus.subscribe(event_type, handler) for event_type, handler in self.subscriptions()]
        try:
            yield self
        finally:
            for unsubscribe in unsubscribers:
                unsubscribe()

    # -------------------- handlers --------------------

    def _in_code_editor(self, event: ProctorEvent) -> bool:
        element = (event.active_element or "").upper()
        return element in CODE_INPUT_ELEMENTS and self._current_question_is_coding()

    def on_fullscreen_change(self, event: ProctorEvent, decision: ProctorDecision):
        # tracked for the "enter fullscreen" button, not counted as a violation
        self.fullscreen = bool(event.fullscreen)
        decision.fullscreen = self.fullscreen
        decision.violation_count = self._count

    def on_visibility_change(self, event: ProctorEvent, decision: ProctorDecision):
        if event.hidden:
            self.add_violation("tab_switch", decision)

    def on_context_menu(self, event: ProctorEvent, decision: ProctorDecision):
        decision.prevent_default = True

    def on_clipboard(self, event: ProctorEvent, decision: ProctorDecision):
        if self._in_code_editor(event):
            self.add_violation("copy_paste", decision)
            decision.prevent_default = True

    def on_keydown(self, event: ProctorEvent, decision: ProctorDecision):
        if not (event.ctrl_key or event.meta_key):
            return
        if (event.key or "").lower() in SHORTCUT_KEYS and self._in_code_editor(event):
            self.add_violation("key_shortcut", decision)
            decision.prevent_default = True

    # -------------------- accounting --------------------

    def add_violation(self, violation_type: str, decision: Optional[ProctorDecision] = None) -> Optional[Violation]:
        decision = decision if decision is not None else ProctorDecision()
        if not self._controller.in_progress:
            decision.violation_count = self._count
            return None

        with self._lock:
            self._count += 1
            violation = Violation(type=violation_type, timestamp=self._clock(), count=self._count)
            self._violations.append(violation)
        count = violation.count

        logger.warning("violation %s #%s", violation_type, count)
        decision.violation = violation
        decision.violation_count = count
        decision.fullscreen = self.fullscreen

        # NOTE: the warning advertises limit - 1 strikes; submission happens on the limit-th
        if count < self._limit:
            decision.warning = f"Violation detected! Warning {count}/{self._limit - 1}"
        else:
            decision.warning = "Maximum violations reached. Auto-submitting exam..."
            decision.auto_submitting = True
            logger.warning("violation limit reached (%s), forcing submission", count)
            self._controller.submit_later(self._submit_delay, auto_submit=True)
        return violation

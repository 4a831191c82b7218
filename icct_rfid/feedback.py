# icct_rfid/feedback.py
# -----------------------------------------------------------------------------
# Bridge → reader (MQTT feedback topic)
# One short status message per scan outcome so the physical reader can beep /
# flash. At-most-once: published only while the broker is connected, never
# queued, never retried.
# -----------------------------------------------------------------------------

from __future__ import annotations
import logging
from typing import Protocol

from .events import FeedbackMessage, FeedbackStatus, IngestResult, Outcome

MSG_RECORDED = "Recorded!"
MSG_ALREADY_SCANNED = "Already scanned"
MSG_UNRECOGNIZED = "Unrecognized card"
MSG_ERROR = "Error"
MSG_SERVICE_ERROR = "Service error"
MSG_REGISTRATION_READY = "Card ready for registration"

log = logging.getLogger("bridge.feedback")


class FeedbackSink(Protocol):
    @property
    def connected(self) -> bool: ...

    def publish(self, topic: str, payload: str) -> bool: ...


def feedback_for(result: IngestResult, rfid: str, topic: str) -> FeedbackMessage:
    """Map one gateway outcome to exactly one feedback message."""
    outcome = result.outcome
    if outcome is Outcome.CREATED:
        return FeedbackMessage(topic, MSG_RECORDED, FeedbackStatus.RECOGNIZED, rfid)
    if outcome is Outcome.DUPLICATE:
        return FeedbackMessage(topic, MSG_ALREADY_SCANNED, FeedbackStatus.RECOGNIZED, rfid)
    if outcome is Outcome.UNRECOGNIZED:
        return FeedbackMessage(topic, MSG_UNRECOGNIZED, FeedbackStatus.UNRECOGNIZED, rfid)
    message = MSG_SERVICE_ERROR if result.transport_failure else MSG_ERROR
    return FeedbackMessage(topic, message, FeedbackStatus.ERROR, rfid)


def cooldown_feedback(rfid: str, topic: str) -> FeedbackMessage:
    """Client-side duplicate: synthesized without touching the gateway."""
    return FeedbackMessage(topic, MSG_ALREADY_SCANNED, FeedbackStatus.RECOGNIZED, rfid)


def registration_feedback(rfid: str, topic: str) -> FeedbackMessage:
    return FeedbackMessage(topic, MSG_REGISTRATION_READY, FeedbackStatus.RECOGNIZED, rfid)


class FeedbackPublisher:
    def __init__(self, sink: FeedbackSink, topic: str):
        self.sink = sink
        self.topic = topic
        self.sent = 0
        self.dropped = 0

    def publish(self, msg: FeedbackMessage) -> bool:
        """Fire-and-forget. Returns True when handed to the broker, False when dropped."""
        if not self.sink.connected:
            self.dropped += 1
            log.debug("feedback_dropped", extra={"tag": msg.value, "reason": "disconnected"})
            return False
        try:
            ok = self.sink.publish(msg.topic, msg.to_json())
        except Exception as e:
            # A flaky broker must never break scan handling.
            self.dropped += 1
            log.warning("feedback_error", extra={"tag": msg.value, "err": str(e)})
            return False
        if ok:
            self.sent += 1
        else:
            self.dropped += 1
        return ok

    def for_result(self, result: IngestResult, rfid: str) -> FeedbackMessage:
        return feedback_for(result, rfid, self.topic)

    def for_cooldown(self, rfid: str) -> FeedbackMessage:
        return cooldown_feedback(rfid, self.topic)

    def for_registration(self, rfid: str) -> FeedbackMessage:
        return registration_feedback(rfid, self.topic)


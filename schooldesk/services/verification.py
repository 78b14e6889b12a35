import hmac
import logging
import secrets
import threading
import time
from typing import Any, Callable, Literal, Mapping, TypedDict

from schooldesk.services.notifications import NotificationSender, SendResult
from schooldesk.services.verification_store import VerificationRecord, VerificationStore

logger = logging.getLogger(__name__)

CODE_LENGTH = 6
CODE_MIN = 10 ** (CODE_LENGTH - 1)  # 100000
CODE_MAX = 10 ** CODE_LENGTH - 1  # 999999
DEFAULT_EXPIRY_SECONDS = 300

GateReason = Literal[
    "CODE_SENT",
    "VERIFIED",
    "DELIVERY_FAILED",
    "NO_ACTIVE_CODE",
    "CODE_EXPIRED",
    "CODE_MISMATCH",
]

MESSAGE_TEMPLATE = (
    "Your one-time password (OTP) for resetting all data for {context} is: {code}. "
    "This code will expire in {minutes} minutes. DO NOT share this code."
)

NO_ACTIVE_CODE_MESSAGE = "No OTP has been sent or it has already been used."
CODE_EXPIRED_MESSAGE = "OTP has expired. Please request a new one."
CODE_MISMATCH_MESSAGE = "Invalid code."
VERIFIED_MESSAGE = "OTP verified successfully."


class GateResult(TypedDict):
    success: bool
    message: str
    reason: GateReason


def generate_code() -> str:
    """Uniform over [100000, 999999], so always exactly six digits."""
    return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))


def _normalize_send_result(outcome: Any) -> SendResult:
    # Senders may answer with a bare bool or a SendResult mapping.
    if isinstance(outcome, bool):
        return {"success": outcome, "error": None}
    if isinstance(outcome, Mapping):
        return {"success": bool(outcome.get("success")), "error": outcome.get("error")}
    return {"success": False, "error": f"Unexpected sender response: {outcome!r}"}


def _result(success: bool, reason: GateReason, message: str) -> GateResult:
    return {"success": success, "message": message, "reason": reason}


class VerificationGate:
    """
    Issues and checks a single outstanding one-time code.

    States of the slot:
      EMPTY --issue--> LIVE --verify(correct)--> EMPTY
      LIVE --issue--> LIVE (older code discarded)
      LIVE --verify(expired, any code)--> EMPTY
      LIVE --verify(wrong)--> LIVE

    Expiry is evaluated lazily when verify() reads the slot. Every read and
    write of the slot goes through `_lock`; the notification send does not.
    """

    def __init__(
        self,
        store: VerificationStore,
        sender: NotificationSender,
        *,
        expiry_seconds: int = DEFAULT_EXPIRY_SECONDS,
        clock: Callable[[], float] = time.time,
        code_factory: Callable[[], str] = generate_code,
    ) -> None:
        self._store = store
        self._sender = sender
        self._lock = threading.Lock()
        self.expiry_seconds = expiry_seconds
        self._clock = clock
        self._code_factory = code_factory

    @property
    def expiry_minutes(self) -> int:
        return max(1, round(self.expiry_seconds / 60))

    def build_message(self, code: str, context: str) -> str:
        return MESSAGE_TEMPLATE.format(context=context, code=code, minutes=self.expiry_minutes)

    def issue(self, destination: str, delivery_config: Any, *, context: str = "the school") -> GateResult:
        record = VerificationRecord(code=self._code_factory(), issued_at=self._clock())
        with self._lock:
            self._store.set(record)

        message = self.build_message(record.code, context)
        try:
            outcome = _normalize_send_result(self._sender.send(destination, message, delivery_config))
        except Exception as e:
            logger.exception("OTP delivery to %s raised: %s", destination, e)
            outcome = {"success": False, "error": str(e) or e.__class__.__name__}

        if not outcome["success"]:
            with self._lock:
                # A newer issue() may have replaced the slot meanwhile; leave that one alone.
                self._store.delete(expected=record)
            error = outcome["error"] or "Unknown delivery error."
            logger.warning("OTP delivery to %s failed: %s", destination, error)
            return _result(False, "DELIVERY_FAILED", f"Failed to send OTP: {error}")

        logger.info("OTP issued and sent to %s", destination)
        return _result(True, "CODE_SENT", f"An OTP has been sent to {destination}.")

    def verify(self, submitted_code: str) -> GateResult:
        with self._lock:
            record = self._store.get()
            if record is None:
                return _result(False, "NO_ACTIVE_CODE", NO_ACTIVE_CODE_MESSAGE)

            age = self._clock() - record.issued_at
            # The lock is per process; with a shared store the conditional
            # delete decides which worker owns the record.
            if age >= self.expiry_seconds:
                if not self._store.delete(expected=record):
                    return _result(False, "NO_ACTIVE_CODE", NO_ACTIVE_CODE_MESSAGE)
                logger.info("OTP expired after %.0fs", age)
                return _result(False, "CODE_EXPIRED", CODE_EXPIRED_MESSAGE)

            # Wrong guesses leave the record live; no attempt limit.
            if not hmac.compare_digest(submitted_code.encode("utf-8"), record.code.encode("utf-8")):
                return _result(False, "CODE_MISMATCH", CODE_MISMATCH_MESSAGE)

            if not self._store.delete(expected=record):
                return _result(False, "NO_ACTIVE_CODE", NO_ACTIVE_CODE_MESSAGE)

        logger.info("OTP verified and consumed")
        return _result(True, "VERIFIED", VERIFIED_MESSAGE)

    def has_active_code(self) -> bool:
        with self._lock:
            record = self._store.get()
        return record is not None and (self._clock() - record.issued_at) < self.expiry_seconds

import logging
import sqlite3
import threading
from typing import Any

from schooldesk.config import OTP_CHANNEL, OTP_EXPIRY_SECONDS, OTP_STORE
from schooldesk.services.notifications import ConsoleSender, NotificationSender, WhatsAppSender
from schooldesk.services.verification import GateResult, VerificationGate
from schooldesk.services.verification_store import (
    InMemoryVerificationStore,
    SqliteVerificationStore,
    VerificationStore,
)
from database.db import (
    SchoolSettings,
    clear_school_data,
    get_school_settings,
    log_reset_event,
)

logger = logging.getLogger(__name__)

# -----------------------------
# Process-wide gate (lazy)
# -----------------------------
_GATE_LOCK = threading.Lock()
_GATE: VerificationGate | None = None


def build_verification_gate(
    *,
    channel: str = OTP_CHANNEL,
    store: str = OTP_STORE,
    expiry_seconds: int = OTP_EXPIRY_SECONDS,
) -> VerificationGate:
    sender: NotificationSender = ConsoleSender() if channel == "console" else WhatsAppSender()
    slot: VerificationStore = SqliteVerificationStore() if store == "sqlite" else InMemoryVerificationStore()
    return VerificationGate(slot, sender, expiry_seconds=expiry_seconds)


def get_verification_gate() -> VerificationGate:
    global _GATE
    with _GATE_LOCK:
        if _GATE is None:
            _GATE = build_verification_gate()
        return _GATE


def reset_destination(settings: SchoolSettings) -> str:
    return (settings.get("owner_phone") or "").strip() or (settings.get("school_phone") or "").strip()


def request_factory_reset_code(gate: VerificationGate, *, actor: str | None = None) -> GateResult:
    settings = get_school_settings()
    destination = reset_destination(settings)
    if not destination:
        result: GateResult = {
            "success": False,
            "message": "Failed to send OTP: no owner or school phone number is configured.",
            "reason": "DELIVERY_FAILED",
        }
    else:
        result = gate.issue(
            destination,
            settings,
            context=settings.get("school_name") or "the school",
        )

    log_reset_event(
        "OTP_REQUESTED",
        reason=result["reason"],
        actor=actor,
        detail={"destination": destination} if destination else None,
    )
    return result


def confirm_factory_reset(gate: VerificationGate, code: str, *, actor: str | None = None) -> dict[str, Any]:
    """
    Wipe all school data if `code` is the live one-time code.

    Returns the gate result, plus "cleared" (rows deleted per table) on success.
    A storage failure during the wipe comes back with reason "RESET_FAILED".
    """
    result = gate.verify(code)
    if not result["success"]:
        log_reset_event("RESET_REJECTED", reason=result["reason"], actor=actor)
        return dict(result)

    try:
        cleared = clear_school_data()
    except sqlite3.Error as e:
        # The code is already consumed; the caller must request a new one.
        logger.exception("Factory reset by %s failed: %s", actor or "unknown", e)
        log_reset_event("RESET_FAILED", reason="STORAGE_ERROR", actor=actor, detail={"error": str(e)})
        return {
            "success": False,
            "message": "Factory reset failed: school data could not be cleared. Request a new OTP and retry.",
            "reason": "RESET_FAILED",
        }

    logger.warning("Factory reset performed by %s: %s", actor or "unknown", cleared)
    log_reset_event("RESET_CONFIRMED", reason=result["reason"], actor=actor, detail=cleared)
    return {
        **result,
        "message": "Factory reset complete: all school data cleared.",
        "cleared": cleared,
    }

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from schooldesk.config import RESET_HISTORY_LIMIT
from schooldesk.security import require_session
from schooldesk.services.factory_reset import (
    confirm_factory_reset,
    get_verification_gate,
    request_factory_reset_code,
)
from schooldesk.services.verification import CODE_LENGTH, VerificationGate
from database.db import count_school_data, get_reset_events

router = APIRouter(dependencies=[Depends(require_session)])


class FactoryResetConfirm(BaseModel):
    # Shape is checked here so the gate only ever sees six digits.
    code: str = Field(min_length=CODE_LENGTH, max_length=CODE_LENGTH, pattern=r"^\d+$")


@router.get("/admin/data/summary")
def data_summary():
    counts = count_school_data()
    return {"tables": counts, "total": sum(counts.values())}


@router.post("/admin/factory-reset/request")
def request_reset_code(
    session: dict = Depends(require_session),
    gate: VerificationGate = Depends(get_verification_gate),
):
    result = request_factory_reset_code(gate, actor=session.get("sub"))
    if not result["success"]:
        raise HTTPException(status_code=502, detail=result["message"])
    return {
        "ok": True,
        "message": result["message"],
        "expires_in_seconds": gate.expiry_seconds,
    }


@router.post("/admin/factory-reset/confirm")
def confirm_reset(
    payload: FactoryResetConfirm,
    session: dict = Depends(require_session),
    gate: VerificationGate = Depends(get_verification_gate),
):
    result = confirm_factory_reset(gate, payload.code, actor=session.get("sub"))
    if result["reason"] == "RESET_FAILED":
        raise HTTPException(status_code=503, detail=result["message"])
    if not result["success"]:
        raise HTTPException(status_code=400, detail=result["message"])
    return {
        "ok": True,
        "message": result["message"],
        "cleared": result["cleared"],
    }


@router.get("/admin/factory-reset/history")
def reset_history(limit: int = Query(default=RESET_HISTORY_LIMIT, ge=1, le=500)):
    return {"rows": get_reset_events(limit)}

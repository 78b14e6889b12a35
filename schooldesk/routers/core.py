from fastapi import APIRouter, Depends

from schooldesk.config import OTP_CHANNEL, OTP_STORE
from schooldesk.services.factory_reset import get_verification_gate
from schooldesk.services.verification import CODE_LENGTH, VerificationGate

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/verification")
def verification_config(gate: VerificationGate = Depends(get_verification_gate)):
    return {
        "code_length": CODE_LENGTH,
        "expiry_seconds": gate.expiry_seconds,
        "channel": OTP_CHANNEL,
        "store": OTP_STORE,
        "active_code": gate.has_active_code(),
    }

from fastapi import APIRouter

from renderfleet.api.deps import Validator
from renderfleet.middleware.request_context import create_request_context, envelope
from renderfleet.schemas.envelope import EnvelopeResponse

router = APIRouter()


@router.get("", response_model=EnvelopeResponse)
async def validate_permissions(validator: Validator, operation: str | None = None) -> EnvelopeResponse:
    """Simulate the permissions an operation needs. Read-only."""
    context = create_request_context()
    report = await validator.validate(operation)
    return envelope(
        context,
        {"operation": operation, "ok": report.ok, "missing": report.missing, "checks": report.model_dump()["checks"]},
    )

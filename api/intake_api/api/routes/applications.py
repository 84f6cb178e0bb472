import logging

from fastapi import APIRouter, Depends, Request

from intake_api.core.config import Settings, get_settings
from intake_api.schemas.applications import ApplyResult
from intake_api.services.errors import IntakeError
from intake_api.services.intake import ACCEPTED_MESSAGE, IntakePipeline, get_admission_locks
from intake_api.services.notifier import get_notifier
from intake_api.services.repository import get_repository
from intake_api.services.validation import decode_application_body

router = APIRouter()
logger = logging.getLogger(__name__)


def get_intake_pipeline(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    notifier=Depends(get_notifier),
) -> IntakePipeline:
    return IntakePipeline(
        repository,
        notifier,
        admission_locks=get_admission_locks() if settings.serialize_admission else None,
        notification_template=settings.notification_template,
    )


@router.post("/apply", response_model=ApplyResult, response_model_exclude_none=True)
async def apply_to_post(
    request: Request,
    pipeline: IntakePipeline = Depends(get_intake_pipeline),
) -> ApplyResult:
    # Failures are reported in the body; the transport status is always 200.
    try:
        payload = decode_application_body(await request.body())
        outcome = await pipeline.submit_application(payload)
    except IntakeError as exc:
        return ApplyResult(success=False, error=exc.message)

    return ApplyResult(
        success=True,
        action="applied",
        application_id=outcome.application_id,
        tenant_id=outcome.tenant_id,
        post_id=outcome.post_id,
        message=ACCEPTED_MESSAGE,
    )

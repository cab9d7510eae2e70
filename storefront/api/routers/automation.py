from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from storefront.api.deps import get_clock, require_perm
from storefront.domain.models import AutomationRunRead, AutomationRunRequest
from storefront.domain.permissions import PERM_AUTOMATION_RUN
from storefront.infra.audit import set_audit_context
from storefront.infra.clock import Clock
from storefront.services.automation_service import AutomationService

router = APIRouter()


def get_automation_service(clock: Annotated[Clock, Depends(get_clock)]) -> AutomationService:
    return AutomationService(clock=clock)


Service = Annotated[AutomationService, Depends(get_automation_service)]


@router.post(
    "/subscriptions:run",
    response_model=AutomationRunRead,
    dependencies=[Depends(require_perm(PERM_AUTOMATION_RUN))],
)
def run_subscription_automation(
    request: Request,
    service: Service,
    payload: AutomationRunRequest | None = None,
) -> AutomationRunRead:
    result = service.run(payload)
    set_audit_context(
        request,
        action="subscription.automation.run",
        resource="/api/automation/subscriptions:run",
        detail={
            "what": {
                "as_of": result.as_of.isoformat(),
                "skipped_duplicates": result.skipped_duplicates,
                "skipped_concurrent": result.skipped_concurrent,
                "errors": len(result.errors),
            }
        },
    )
    return result


@router.get(
    "/subscriptions/last-run",
    response_model=AutomationRunRead,
    dependencies=[Depends(require_perm(PERM_AUTOMATION_RUN))],
)
def get_last_run() -> AutomationRunRead:
    result = AutomationService.get_last_run()
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no automation run recorded")
    return result

"""
Cron Routes - Endpoints invoked by the external scheduler.

Authenticated with `Authorization: Bearer {cron_secret}`.
"""

from fastapi import APIRouter, Depends

from fitledger.api.dependencies import get_renewal_service, require_cron_secret
from fitledger.models.api import RenewalErrorResponse, RenewalReportResponse
from fitledger.observability import get_logger
from fitledger.services.renewals import RenewalService

logger = get_logger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])


@router.get(
    "/renew-subscriptions",
    response_model=RenewalReportResponse,
    dependencies=[Depends(require_cron_secret)],
)
async def renew_subscriptions(
    service: RenewalService = Depends(get_renewal_service),
) -> RenewalReportResponse:
    """
    Daily job: charge subscriptions due today, then lapse expired ones.

    Safe to call more than once a day; a profile is only charged while its
    billing date is today.
    """
    report = await service.run()
    logger.info(
        "cron_renewal_completed",
        total=report.total,
        successful=report.successful,
        failed=report.failed,
        skipped=report.skipped,
        lapsed=report.lapsed,
    )
    return RenewalReportResponse(
        total=report.total,
        successful=report.successful,
        failed=report.failed,
        skipped=report.skipped,
        lapsed=report.lapsed,
        errors=[
            RenewalErrorResponse(user_id=failure.user_id, error=failure.error)
            for failure in report.errors
        ],
    )

"""
Cron trigger endpoints - an external scheduler hits these every minute.

Auth: Authorization: Bearer <CRON_SECRET>, or the platform scheduler header
(x-vercel-cron: 1). The JSON body is the driver's CronSummary; a fatal
driver error is a 500 with {error, timestamp}.
"""
import hmac
import logging

from fastapi import APIRouter, Request, Depends, HTTPException
from fastapi.responses import JSONResponse

from ghl_ingest.config import get_settings
from ghl_ingest.utils.alerting import send_alert, AlertType
from ghl_ingest.utils.timestamps import utcnow

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cron", tags=["cron"])


async def require_cron_auth(request: Request) -> None:
    settings = get_settings()
    auth = request.headers.get("authorization", "")
    if settings.cron_secret and hmac.compare_digest(
        auth.encode(), f"Bearer {settings.cron_secret}".encode()
    ):
        return
    if request.headers.get(settings.cron_platform_header) == "1":
        return
    logger.warning("Unauthorized cron call to %s", request.url.path)
    raise HTTPException(status_code=401, detail="Unauthorized")


def get_webhook_driver():
    from ghl_ingest.workers.webhook_queue import WebhookQueueDriver
    return WebhookQueueDriver()


def get_install_driver():
    from ghl_ingest.workers.install_queue import InstallQueueDriver
    return InstallQueueDriver()


def get_token_refresh_driver():
    from ghl_ingest.workers.token_refresh import TokenRefreshDriver
    return TokenRefreshDriver()


async def _run(driver) -> JSONResponse:
    try:
        summary = await driver.run()
    except Exception as e:
        logger.error("Cron %s failed: %s", driver.name, str(e), exc_info=True)
        await send_alert(AlertType.CRON_FATAL, f"Cron {driver.name} failed: {str(e)[:200]}", severity="critical")
        return JSONResponse(
            status_code=500,
            content={"error": str(e) or type(e).__name__, "timestamp": utcnow().isoformat()},
        )
    return JSONResponse(status_code=200, content=summary.body())


@router.api_route(
    "/process-webhooks", methods=["GET", "POST"], dependencies=[Depends(require_cron_auth)]
)
async def process_webhooks(driver=Depends(get_webhook_driver)):
    return await _run(driver)


@router.api_route(
    "/process-install-queue", methods=["GET", "POST"], dependencies=[Depends(require_cron_auth)]
)
async def process_install_queue(driver=Depends(get_install_driver)):
    return await _run(driver)


@router.api_route(
    "/refresh-tokens", methods=["GET", "POST"], dependencies=[Depends(require_cron_auth)]
)
async def refresh_tokens(driver=Depends(get_token_refresh_driver)):
    return await _run(driver)

import logging
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from marketplace.database import Base, engine, get_db
from marketplace.dependencies import get_notifier, get_processor
from marketplace.errors import PaymentServiceError
from marketplace.logging_config import setup_logging
from marketplace.routes import router
from marketplace.webhooks import WebhookReconciler

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Car Marketplace Payment Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(PaymentServiceError)
async def payment_service_error_handler(request: Request, exc: PaymentServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.get("/health")
def health():
    return {
        "status": "ok",
        "service": "customer-payments",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    db: Session = Depends(get_db),
    processor=Depends(get_processor),
    notifier=Depends(get_notifier),
):
    # Signature is computed over the raw bytes
    payload = await request.body()

    reconciler = WebhookReconciler(db, processor, notifier)
    ack = await run_in_threadpool(reconciler.handle_event, payload, stripe_signature)
    return ack.to_dict()

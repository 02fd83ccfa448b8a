import json
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from account_pool import models
from account_pool.allocator import AccountAllocator, AccountReleaser, pool_stats
from account_pool.config import Settings, get_settings
from account_pool.credentials import CredentialDispatcher
from account_pool.database import build_engine, build_session_factory
from account_pool.ledger import NotificationLedger
from account_pool.logging_config import configure_logging, get_logger
from account_pool.schemas import PoolStats, WebhookEnvelope, WebhookResponse
from account_pool.security import SignatureVerifier, require_bearer_token
from account_pool.webhooks import NotificationProcessor

logger = get_logger(__name__)

router = APIRouter()


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_verifier(request: Request) -> SignatureVerifier:
    return request.app.state.verifier


def get_processor(request: Request) -> NotificationProcessor:
    return request.app.state.processor


def get_dispatcher(request: Request) -> CredentialDispatcher:
    return request.app.state.dispatcher


def parse_envelope(raw_body: bytes) -> tuple[WebhookEnvelope, dict[str, Any]]:
    """
    Parse the already-authenticated body; the decoded document is what the ledger stores.
    """
    try:
        payload = json.loads(raw_body)
    except ValueError as exc:
        logger.warning("Rejected webhook: malformed JSON error=%s", exc)
        raise HTTPException(status_code=400, detail="malformed JSON body") from exc
    if not isinstance(payload, dict):
        logger.warning("Rejected webhook: body is not a JSON object")
        raise HTTPException(status_code=400, detail="body must be a JSON object")
    try:
        envelope = WebhookEnvelope.model_validate(payload)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in exc.errors())
        logger.warning("Rejected webhook: invalid payload id=%s fields=%s", payload.get("id"), fields)
        raise HTTPException(status_code=400, detail=f"invalid payload: {fields}") from exc
    return envelope, payload


@router.post("/webhooks/hotmart", response_model=WebhookResponse)
async def receive_notification(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    verifier: SignatureVerifier = Depends(get_verifier),
    processor: NotificationProcessor = Depends(get_processor),
    dispatcher: CredentialDispatcher = Depends(get_dispatcher),
):
    raw_body = await request.body()
    verifier.verify(raw_body, request.headers)
    envelope, payload = parse_envelope(raw_body)
    logger.info(
        "Received webhook id=%s event=%s transaction_id=%s",
        envelope.id,
        envelope.event,
        envelope.transaction_id,
    )
    try:
        result = await run_in_threadpool(processor.process, db, envelope, payload)
    except SQLAlchemyError:
        logger.exception("Storage failure while processing notification id=%s", envelope.id)
        return JSONResponse(status_code=500, content={"success": False, "message": "internal storage error"})

    if result.credentials:
        delivery = result.credentials
        background_tasks.add_task(dispatcher.dispatch, delivery.buyer_email, delivery.username, delivery.password)
    return JSONResponse(status_code=result.status_code, content=result.body.model_dump())


@router.get("/pool/stats", response_model=PoolStats)
async def get_pool_stats(_auth=Depends(require_bearer_token), db: Session = Depends(get_db)):
    return pool_stats(db)


@router.get("/health")
async def health():
    return {"status": "ok"}


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"success": False, "message": "invalid request"})


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    engine = build_engine(settings)
    models.Base.metadata.create_all(bind=engine)

    ledger = NotificationLedger(settings.source)
    app = FastAPI(title="Account Pool Webhooks")
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.verifier = SignatureVerifier(settings)
    app.state.processor = NotificationProcessor(
        ledger=ledger,
        allocator=AccountAllocator(settings, ledger=ledger),
        releaser=AccountReleaser(),
    )
    app.state.dispatcher = CredentialDispatcher(settings)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.include_router(router)
    logger.info(
        "Account pool service ready signature_mode=%s occupancy_days=%s",
        settings.signature_mode.value,
        settings.occupancy_days,
    )
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)

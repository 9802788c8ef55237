from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Dict, Optional
import logging
import uvicorn
from razorpay.errors import BadRequestError

from blockchain import BlockchainService
from schemas import (
    RegisterBatchRequest,
    RegisterBatchResponse,
    TransferRequest,
    SetPriceRequest,
    RolePriceRequest,
    WriteResponse,
    BatchResponse,
    BatchListResponse,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    QueueItemRequest,
    QueueItemResponse,
    QueueListResponse,
    DecisionRequest,
    VerifyBatchRequest,
    VerifyBatchResponse,
    QRCodeResponse,
    LoginRequest,
    LoginResponse,
    UserInfo,
)
from config import settings
from auth import (
    auth_service,
    get_current_user,
    require_auth,
    require_admin,
    require_verifier,
    require_supply_chain_roles,
    User,
    UserRole,
)
from services import (
    AgriTraceError,
    BatchRegistry,
    BatchView,
    Capability,
    CustodyService,
    FileSessionTracker,
    InMemorySessionTracker,
    InvalidLedgerTarget,
    ModerationQueue,
    NotFound,
    PaymentGateway,
    PaymentGatewayNotConfigured,
    PriceRole,
    QRService,
    RelayerNotConfigured,
    SettlementReconciler,
    SignalRejected,
    SignalSource,
    TransitionDenied,
    ValidationFailed,
    WriteRejected,
)
from services.memory_ledger import DEMO_RELAYER_ADDRESS, InMemoryLedger
from services.moderation import submit_verification
from services.payments import signal_from_order
from services.settlement import SettlementStatus
from utils import generate_explorer_url, is_same_address, is_valid_address, parse_batch_id


logger = logging.getLogger("agritrace.backend")

# Global services
ledger = None
custody_service: Optional[CustodyService] = None
batch_registry: Optional[BatchRegistry] = None
settlement_reconciler: Optional[SettlementReconciler] = None
payment_gateway: Optional[PaymentGateway] = None
moderation_queue: Optional[ModerationQueue] = None
qr_service: Optional[QRService] = None


def _require_service(service, name: str):
    if service is None:
        raise HTTPException(status_code=503, detail=f"{name} service is not available")
    return service


def _to_http(exc: AgriTraceError) -> HTTPException:
    """Map core errors onto HTTP status codes."""
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidLedgerTarget):
        return HTTPException(status_code=400, detail={"error": str(exc), "address": exc.address})
    if isinstance(exc, ValidationFailed):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, TransitionDenied):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, RelayerNotConfigured):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, WriteRejected):
        return HTTPException(status_code=502, detail=f"Ledger write failed: {exc}")
    return HTTPException(status_code=502, detail=f"Ledger read failed: {exc}")


def _parse_id(value: str) -> int:
    batch_id = parse_batch_id(value)
    if batch_id is None:
        raise HTTPException(status_code=400, detail="invalid_id")
    return batch_id


def _batch_payload(view: BatchView) -> BatchResponse:
    record = view.record
    return BatchResponse(
        id=str(record.id),
        cropType=record.crop_type,
        quantityKg=str(record.quantity_kg),
        farmer=record.farmer,
        distributor=record.distributor,
        retailer=record.retailer,
        consumer=record.consumer,
        currentOwner=record.current_owner,
        holderRole=view.holder_role.value,
        metadataCID=record.metadata_cid,
        dates=view.dates,
        prices={key: str(value) for key, value in view.prices.items()},
        verificationStatus=record.verification_status,
        source=view.source,
    )


def _write_payload(outcome) -> WriteResponse:
    return WriteResponse(batchId=str(outcome.batch_id), tx=outcome.tx_hash, changed=outcome.changed)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    global ledger, custody_service, batch_registry, settlement_reconciler, payment_gateway, moderation_queue, qr_service
    if settings.DEMO_MODE:
        ledger = InMemoryLedger(signer=DEMO_RELAYER_ADDRESS)
        await ledger.set_verifier(ledger.relayer_address, True)
        logger.warning("DEMO_MODE enabled: using the in-memory ledger, nothing is written on-chain")
    else:
        ledger = BlockchainService()
        await ledger.initialize()

    custody_service = CustodyService(ledger)
    batch_registry = BatchRegistry(ledger)

    if settings.SETTLEMENT_STATE_PATH:
        tracker = FileSessionTracker(settings.SETTLEMENT_STATE_PATH)
    else:
        tracker = InMemorySessionTracker()
    settlement_reconciler = SettlementReconciler(custody_service, tracker)

    payment_gateway = PaymentGateway(
        key_id=settings.RAZORPAY_KEY_ID,
        key_secret=settings.RAZORPAY_KEY_SECRET,
        webhook_secret=settings.RAZORPAY_WEBHOOK_SECRET,
    )
    if not payment_gateway.configured:
        logger.warning("Razorpay keys not set; checkout and confirm-payment are disabled")

    moderation_queue = ModerationQueue(settings.MODERATION_STATE_PATH)
    qr_service = QRService(settings.PUBLIC_BASE_URL, settings.QR_CACHE_DIR)

    yield
    # Shutdown hooks can be added here

app = FastAPI(
    title="AgriTrace Backend API",
    description="Traceability backend for agricultural batches: custody, pricing and payment settlement",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware for frontend communication
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.get("/")
async def root():
    return {"message": "AgriTrace Backend API", "status": "running"}

@app.get("/health")
async def health_check():
    client = _require_service(ledger, "Ledger")
    try:
        is_connected = await client.check_connection()
        return {
            "status": "healthy",
            "blockchain_connected": is_connected,
            "network": settings.NETWORK_NAME,
            "demoMode": settings.DEMO_MODE,
        }
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Service unhealthy: {str(e)}")

# Authentication Endpoints
@app.post("/auth/login", response_model=LoginResponse)
async def login(request: LoginRequest):
    """Login endpoint for all user types"""
    user = auth_service.authenticate_user(request.username, request.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")

    # Return username as token for demo (use JWT in production)
    return LoginResponse(
        success=True,
        token=user.username,
        user={
            "id": user.id,
            "username": user.username,
            "role": user.role.value,
            "wallet_address": user.wallet_address
        },
        message=f"Logged in as {user.role.value}"
    )

@app.get("/auth/me", response_model=UserInfo)
async def get_current_user_info(user: User = Depends(get_current_user)):
    """Get current user information"""
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")

    return UserInfo(
        id=user.id,
        username=user.username,
        role=user.role.value,
        wallet_address=user.wallet_address
    )

# Batch Endpoints
@app.post("/api/register-batch", response_model=RegisterBatchResponse)
async def register_batch(request: RegisterBatchRequest, user: User = Depends(require_supply_chain_roles)):
    """Register a batch on-chain through the relayer (farmers register for themselves)"""
    custody = _require_service(custody_service, "Custody")
    farmer = request.farmerAddress
    if not farmer and user.role == UserRole.FARMER:
        farmer = user.wallet_address
    try:
        result = await custody.register(
            crop_type=request.cropType,
            quantity_kg=request.quantityKg,
            base_price_inr=request.basePriceINR,
            harvest_date=request.harvestDate,
            metadata_cid=request.metadataCID,
            min_price_inr=request.minPriceINR,
            farmer=farmer,
        )
    except AgriTraceError as exc:
        raise _to_http(exc) from exc
    except Exception as exc:
        logger.error("register-batch failed", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to register batch: {exc}") from exc

    return RegisterBatchResponse(
        batchId=str(result.batch_id) if result.batch_id is not None else None,
        tx=result.tx_hash,
        usedFallback=result.used_fallback,
        minPriceTx=result.min_price_tx,
    )

@app.get("/api/batches", response_model=BatchListResponse)
async def list_batches():
    registry = _require_service(batch_registry, "Batch registry")
    try:
        views = await registry.list_batches()
    except AgriTraceError as exc:
        raise _to_http(exc) from exc
    return BatchListResponse(batches=[_batch_payload(view) for view in views])

@app.get("/api/batch/{batch_id}", response_model=BatchResponse)
async def get_batch(batch_id: str):
    registry = _require_service(batch_registry, "Batch registry")
    try:
        view = await registry.get_batch(_parse_id(batch_id))
    except AgriTraceError as exc:
        raise _to_http(exc) from exc
    return _batch_payload(view)

@app.post("/api/transfer", response_model=WriteResponse)
async def transfer_batch(request: TransferRequest, user: User = Depends(require_auth)):
    """Current holder hands the batch to the next role in the chain"""
    custody = _require_service(custody_service, "Custody")
    try:
        outcome = await custody.transfer(request.batchId, request.toAddress, user.as_caller())
    except AgriTraceError as exc:
        raise _to_http(exc) from exc
    return _write_payload(outcome)

@app.post("/api/transfer/privileged", response_model=WriteResponse)
async def transfer_batch_privileged(request: TransferRequest, user: User = Depends(require_verifier)):
    """Verifier-signed transfer to any address"""
    custody = _require_service(custody_service, "Custody")
    try:
        outcome = await custody.transfer(
            request.batchId, request.toAddress, user.as_caller(), Capability.PRIVILEGED_TRANSFER
        )
    except AgriTraceError as exc:
        raise _to_http(exc) from exc
    return _write_payload(outcome)

async def _set_price(batch_id: int, role: PriceRole, price: int, user: User) -> WriteResponse:
    custody = _require_service(custody_service, "Custody")
    try:
        outcome = await custody.set_price(batch_id, role, price, user.as_caller())
    except AgriTraceError as exc:
        raise _to_http(exc) from exc
    return _write_payload(outcome)

@app.post("/api/set-price", response_model=WriteResponse)
async def set_price(request: SetPriceRequest, user: User = Depends(require_auth)):
    return await _set_price(request.batchId, request.role, request.priceINR, user)

@app.post("/api/set-price-by-distributor", response_model=WriteResponse)
async def set_price_by_distributor(request: RolePriceRequest, user: User = Depends(require_auth)):
    return await _set_price(request.batchId, PriceRole.DISTRIBUTOR, request.priceINR, user)

@app.post("/api/set-price-by-retailer", response_model=WriteResponse)
async def set_price_by_retailer(request: RolePriceRequest, user: User = Depends(require_auth)):
    return await _set_price(request.batchId, PriceRole.RETAILER, request.priceINR, user)

@app.get("/batch/{batch_id}/qr", response_model=QRCodeResponse)
async def batch_qr(batch_id: str):
    qr = _require_service(qr_service, "QR")
    return QRCodeResponse(**qr.generate(_parse_id(batch_id)))

# Payment Endpoints
@app.post("/create-checkout-session", response_model=CheckoutSessionResponse)
async def create_checkout_session(request: CheckoutSessionRequest):
    gateway = _require_service(payment_gateway, "Payment")
    try:
        order = await gateway.create_order(
            batch_id=request.batchId,
            role=request.role.value,
            amount_paise=request.amountPaise,
            to_address=request.toAddress,
            distributor_price_inr=request.distributorPriceINR,
            consumer_price_inr=request.consumerPriceINR,
            currency=request.currency,
        )
    except PaymentGatewayNotConfigured as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except AgriTraceError as exc:
        raise _to_http(exc) from exc
    except Exception as exc:
        logger.error("create-checkout-session failed", exc_info=True)
        raise HTTPException(status_code=500, detail="failed_to_create_session") from exc
    return CheckoutSessionResponse(
        id=order["id"],
        amount=order["amount"],
        currency=order.get("currency", request.currency),
        order=order,
    )

@app.post("/webhook")
async def payment_webhook(request: Request) -> Dict[str, Any]:
    """Razorpay webhook; always acknowledges once the signature checks out"""
    gateway = _require_service(payment_gateway, "Payment")
    reconciler = _require_service(settlement_reconciler, "Settlement")
    body = await request.body()
    try:
        event = gateway.parse_webhook(body, request.headers.get("X-Razorpay-Signature"))
    except PaymentGatewayNotConfigured as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except SignalRejected as exc:
        logger.error("Webhook signature verification failed: %s", exc)
        raise HTTPException(status_code=400, detail=f"Webhook Error: {exc}") from exc

    event_type = event.get("event")
    order = gateway.paid_order(event)
    if order is None:
        if event_type == "payment.failed":
            payment = ((event.get("payload") or {}).get("payment") or {}).get("entity") or {}
            logger.info("Payment failed for order %s; no on-chain action", payment.get("order_id"))
        return {"received": True}

    try:
        signal = signal_from_order(order, SignalSource.PUSH)
    except SignalRejected as exc:
        logger.warning("Ignoring order %s: %s", order.get("id"), exc)
        return {"received": True}

    try:
        outcome = await reconciler.settle(signal)
    except Exception:
        # The payment is already captured; a non-2xx would only trigger blind redelivery
        logger.error("Webhook handler error for order %s", signal.session_id, exc_info=True)
        return {"received": True}

    if outcome.status is SettlementStatus.SKIPPED:
        return {"received": True, "skipped": True}
    if outcome.status is SettlementStatus.IN_PROGRESS:
        return {"received": True, "inProgress": True}
    logger.info("Checkout complete for order %s", signal.session_id)
    return {"received": True}

@app.post("/api/confirm-payment", response_model=ConfirmPaymentResponse)
async def confirm_payment(request: ConfirmPaymentRequest):
    """Client-driven settlement for when the webhook cannot reach this server"""
    gateway = _require_service(payment_gateway, "Payment")
    reconciler = _require_service(settlement_reconciler, "Settlement")
    if not request.sessionId or not request.sessionId.startswith("order_"):
        raise HTTPException(status_code=400, detail="invalid_session")

    try:
        order = await gateway.fetch_order(request.sessionId)
    except PaymentGatewayNotConfigured as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except BadRequestError as exc:
        raise HTTPException(status_code=400, detail="invalid_session") from exc
    if not order or order.get("status") != "paid":
        raise HTTPException(status_code=400, detail="not_paid")

    try:
        signal = signal_from_order(
            order,
            SignalSource.PULL,
            to_address_override=request.toAddress,
            batch_id_override=request.batchId,
        )
        outcome = await reconciler.settle(signal)
    except AgriTraceError as exc:
        raise _to_http(exc) from exc
    except Exception as exc:
        logger.error("confirm-payment failed", exc_info=True)
        raise HTTPException(status_code=500, detail=f"confirm_failed: {exc}") from exc

    return ConfirmPaymentResponse(sessionId=signal.session_id, tx=outcome.transfer_tx, priceTx=outcome.price_tx)

# Moderation Endpoints
@app.post("/api/verifier/queue", response_model=QueueItemResponse)
async def enqueue_for_review(request: QueueItemRequest):
    queue = _require_service(moderation_queue, "Moderation")
    item = await queue.enqueue(request.model_dump())
    return QueueItemResponse(item=item)

@app.get("/api/verifier/queue", response_model=QueueListResponse)
async def list_review_queue(status: Optional[str] = None):
    queue = _require_service(moderation_queue, "Moderation")
    return QueueListResponse(items=await queue.list_items(status))

@app.post("/api/verifier/queue/{item_id}/decide", response_model=QueueItemResponse)
async def decide_review(item_id: str, request: DecisionRequest, user: User = Depends(require_verifier)):
    queue = _require_service(moderation_queue, "Moderation")
    try:
        item = await queue.decide(item_id, request.decision.value, request.notes)
    except AgriTraceError as exc:
        raise _to_http(exc) from exc
    return QueueItemResponse(item=item)

@app.post("/api/verification/verify-batch", response_model=VerifyBatchResponse)
async def verify_batch(request: VerifyBatchRequest):
    queue = _require_service(moderation_queue, "Moderation")
    try:
        result = await submit_verification(
            queue,
            farmer_aadhaar=request.farmerAadhaar,
            estimated_quantity=request.estimatedQuantity,
            sample_weight=request.sampleWeight,
            quality_grade=request.qualityGrade,
            moisture_content=request.moistureContent,
            verification_center_id=request.verificationCenterId,
            verifier_photo=request.verifierPhoto,
            testing_notes=request.testingNotes,
        )
    except AgriTraceError as exc:
        raise _to_http(exc) from exc
    return VerifyBatchResponse(
        message="Batch verified successfully",
        batchId=result["batchId"],
        verificationData=result["verificationData"],
    )

# Diagnostics / setup
@app.get("/api/relayer-status")
async def relayer_status():
    client = _require_service(ledger, "Ledger")
    return {"configured": client.can_write, "address": client.relayer_address}

@app.get("/api/chain-info")
async def chain_info():
    client = _require_service(ledger, "Ledger")
    relayer = client.relayer_address
    has_bytecode = await client.probe_deployed()
    is_relayer_verifier = None
    if relayer and has_bytecode:
        try:
            is_relayer_verifier = await client.is_verifier(relayer)
        except AgriTraceError as exc:
            logger.warning("verifiers(%s) read failed: %s", relayer, exc)
    block_number = await client.block_number()
    return {
        "chain": settings.NETWORK_NAME,
        "chainId": settings.CHAIN_ID,
        "rpcUrl": settings.RPC_URL or None,
        "contractAddress": client.contract_address,
        "relayerAddress": relayer,
        "addressMatchesRelayer": is_same_address(client.contract_address, relayer),
        "hasBytecode": has_bytecode,
        "blockNumber": str(block_number) if block_number is not None else None,
        "isRelayerVerifier": is_relayer_verifier,
    }

@app.get("/api/debug/batch-raw/{batch_id}")
async def debug_batch_raw(batch_id: str):
    """Raw struct read next to the last registration event for one id"""
    client = _require_service(ledger, "Ledger")
    parsed = _parse_id(batch_id)
    if not is_valid_address(client.contract_address) or not await client.probe_deployed():
        raise HTTPException(status_code=400, detail={"error": "not_a_contract", "address": client.contract_address})
    raw = None
    try:
        raw = asdict(await client.read_batch(parsed))
    except AgriTraceError as exc:
        logger.info("Struct read for batch %s failed: %s", parsed, exc)
    try:
        events = await client.read_registration_events(parsed)
    except AgriTraceError as exc:
        raise _to_http(exc) from exc
    return {"ok": True, "raw": raw, "fallback": asdict(events[-1]) if events else None}

@app.post("/api/setup-relayer-as-verifier")
async def setup_relayer_as_verifier(user: User = Depends(require_admin)):
    """One-time setup: the contract owner grants the relayer the verifier role"""
    client = _require_service(ledger, "Ledger")
    if not client.relayer_address:
        raise HTTPException(status_code=503, detail="relayer_not_configured")
    try:
        if not is_valid_address(client.contract_address) or not await client.probe_deployed():
            raise InvalidLedgerTarget("not_a_contract", client.contract_address)
        tx_hash = await client.set_verifier(client.relayer_address, True)
    except AgriTraceError as exc:
        raise _to_http(exc) from exc
    return {"ok": True, "tx": tx_hash, "explorerUrl": generate_explorer_url(tx_hash)}

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.DEBUG
    )

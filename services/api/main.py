"""FastAPI application for crypto invoicing.

Production-ready API with:
- Health and readiness checks for Kubernetes
- Invoice lifecycle endpoints scoped to the calling account
- On-chain payment verification
- Structured error responses
- Prometheus metrics for monitoring

Based on FastAPI best practices:
https://fastapi.tiangolo.com/
"""

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from services.api import metrics
from services.api.dependencies import get_account_id
from services.invoices.models import (
    Invoice,
    InvoiceCreate,
    InvoiceStatus,
    InvoiceSummary,
    StatusUpdate,
)
from services.invoices.store import InvoiceStore
from services.rates.cache import RateCache, RateSnapshot
from services.rates.converter import CurrencyConverter
from services.shared.config import get_settings
from services.shared.errors import (
    ExternalServiceError,
    InvalidTransitionError,
    NotFoundError,
    PlatformError,
    UnknownCurrencyError,
    ValidationError,
)
from services.verification.orchestrator import (
    PaymentConfirmation,
    PaymentVerificationOrchestrator,
)

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

rate_cache = RateCache(settings)
converter = CurrencyConverter(rate_cache)
invoice_store = InvoiceStore(settings, converter)
orchestrator = PaymentVerificationOrchestrator(settings, invoice_store)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Warm the rate cache at startup. Falls back to baked-in rates on failure."""
    snapshot = await run_in_threadpool(rate_cache.refresh)
    logger.info(
        f"{settings.service_name} {settings.service_version} started "
        f"({settings.environment}), rates stale: {snapshot.is_stale}"
    )
    yield


app = FastAPI(
    title="Crypto Invoice Platform",
    description="Invoices payable in fiat or crypto, with on-chain payment verification",
    version=settings.service_version,
    lifespan=lifespan,
)

AccountId = Annotated[str, Depends(get_account_id)]


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Middleware to collect request metrics.

    Tracks:
    - Request count by method, endpoint, and status
    - Request duration by method and endpoint
    """
    # Skip metrics for /metrics endpoint itself
    if request.url.path == "/metrics":
        return await call_next(request)

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    # Label by route template so invoice ids do not explode cardinality
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    metrics.http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code,
    ).inc()

    metrics.http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint,
    ).observe(duration)

    return response


def _status_for(error: PlatformError) -> int:
    if isinstance(error, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, InvalidTransitionError):
        return status.HTTP_409_CONFLICT
    if isinstance(error, ValidationError | UnknownCurrencyError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, ExternalServiceError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(PlatformError)
async def platform_error_handler(request: Request, exc: PlatformError) -> JSONResponse:
    """Render domain errors as structured JSON responses."""
    return JSONResponse(status_code=_status_for(exc), content=exc.to_dict())


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    rates_stale: bool


class VerifyPaymentRequest(BaseModel):
    """Payment confirmation request."""

    tx_hash: str | None = None


class DeleteResponse(BaseModel):
    """Invoice deletion response."""

    deleted: bool


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check() -> HealthResponse:
    """Health check endpoint for liveness checks.

    Returns:
        Health status information
    """
    return HealthResponse(
        status="healthy", version=settings.service_version, service=settings.service_name
    )


@app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
def readiness_check() -> ReadinessResponse:
    """Readiness check endpoint for Kubernetes readiness checks.

    Stale rates do not make the service unready; conversions fall back to
    the last known (or baked-in) rates.

    Returns:
        Readiness status
    """
    return ReadinessResponse(ready=True, rates_stale=rate_cache.is_stale())


@app.get("/metrics", tags=["Monitoring"])
def get_metrics() -> Response:
    """Prometheus metrics endpoint.

    Returns:
        Prometheus metrics in text format
    """
    metrics_data, content_type = metrics.get_metrics()
    return Response(content=metrics_data, media_type=content_type)


@app.get("/api/v1/rates", response_model=RateSnapshot, tags=["Rates"])
def get_rates() -> RateSnapshot:
    """Current fiat price per supported cryptocurrency.

    Refreshes from the price oracle at most once per refresh interval.
    ``is_stale`` is true when the oracle could not be reached for longer
    than the configured max staleness.
    """
    return rate_cache.refresh_if_stale()


@app.post(
    "/api/v1/invoices",
    response_model=Invoice,
    status_code=status.HTTP_201_CREATED,
    tags=["Invoices"],
)
def create_invoice(payload: InvoiceCreate, account_id: AccountId) -> Invoice:
    """Create an invoice.

    When ``crypto_currency`` is given, the crypto amount is computed from the
    current rate and frozen on the invoice; later rate changes never alter it.

    ## Error Handling

    - Returns 400 if client name/email or line items are missing
    - Returns 400 if the crypto currency has no known rate
    - Returns 422 if fields fail type/range validation
    """
    invoice = invoice_store.create(account_id, payload)
    metrics.invoices_created_total.labels(crypto_currency=invoice.crypto_currency or "none").inc()
    return invoice


@app.get("/api/v1/invoices", response_model=list[Invoice], tags=["Invoices"])
def list_invoices(
    account_id: AccountId,
    status_filter: str | None = Query(
        None, alias="status", description="pending, paid, overdue, cancelled or all"
    ),
    search: str | None = Query(None, description="Matches client name, email or invoice number"),
) -> list[Invoice]:
    """List the account's invoices, newest first. Overdue status is derived at read time."""
    wanted: InvoiceStatus | None = None
    if status_filter and status_filter != "all":
        try:
            wanted = InvoiceStatus(status_filter)
        except ValueError as e:
            raise ValidationError(
                f"Unknown status filter '{status_filter}'",
                details={"allowed": [s.value for s in InvoiceStatus] + ["all"]},
            ) from e
    return invoice_store.query(account_id, status=wanted, search=search)


@app.get("/api/v1/invoices/summary", response_model=InvoiceSummary, tags=["Invoices"])
def invoice_summary(account_id: AccountId) -> InvoiceSummary:
    """Revenue, outstanding amounts and counts per status for dashboards."""
    return invoice_store.summarize(account_id)


@app.get("/api/v1/invoices/{invoice_id}", response_model=Invoice, tags=["Invoices"])
def get_invoice(invoice_id: str, account_id: AccountId) -> Invoice:
    """Get a single invoice."""
    return invoice_store.get(invoice_id, owner_id=account_id)


@app.patch("/api/v1/invoices/{invoice_id}/status", response_model=Invoice, tags=["Invoices"])
def update_invoice_status(invoice_id: str, payload: StatusUpdate, account_id: AccountId) -> Invoice:
    """Change an invoice's status manually.

    **Unverified.** This path bypasses on-chain verification entirely and is
    meant for currencies without a ledger verifier (or off-chain payments).
    A payment marked paid here is trusted as claimed; ``tx_hash`` is stored
    as given and ``verification_details`` stays empty.

    Paid and cancelled invoices cannot change status. Overdue is derived and
    cannot be set.
    """
    return orchestrator.apply_manual_status(
        invoice_id, payload.status, tx_hash=payload.tx_hash, owner_id=account_id
    )


@app.delete("/api/v1/invoices/{invoice_id}", response_model=DeleteResponse, tags=["Invoices"])
def delete_invoice(invoice_id: str, account_id: AccountId) -> DeleteResponse:
    """Delete an invoice in any status. Deleting twice is harmless."""
    return DeleteResponse(deleted=invoice_store.delete(invoice_id, owner_id=account_id))


@app.post(
    "/api/v1/invoices/{invoice_id}/verify-payment",
    response_model=PaymentConfirmation,
    tags=["Payments"],
)
def verify_payment(
    invoice_id: str,
    payload: VerifyPaymentRequest,
    account_id: AccountId,
    response: Response,
) -> PaymentConfirmation:
    """Confirm a crypto payment on-chain and mark the invoice paid.

    Supported currencies: ETH and USDC (Etherscan), BTC (Blockstream).
    Other currencies must be confirmed through the manual status endpoint.

    ## Response

    - 200 with ``verified: true`` and the paid invoice on success
    - 422 with ``verified: false``, the failure reason and partial evidence
      when the transaction does not satisfy the invoice; the invoice is unchanged
    - 409 if the invoice is already paid or cancelled
    - 400 if ``tx_hash`` is missing or the currency cannot be verified
    """
    confirmation = orchestrator.confirm_payment(invoice_id, payload.tx_hash, owner_id=account_id)
    if not confirmation.verified:
        response.status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    return confirmation

from __future__ import annotations

import asyncio
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Dict
from urllib.parse import urlencode

import pydantic
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vissreader.config import Settings, get_settings
from vissreader.db.session import create_engine, create_sessionmaker
from vissreader.errors import BillingError, GatewayError, InsufficientFunds, ValidationError
from vissreader.services.balance import BalanceService, serialize_transaction
from vissreader.services.illustrations import IllustrationCache, IllustrationRequest, IllustrationService
from vissreader.services.image_client import ImageClient, ImageError, ImageProvider
from vissreader.services.payments import PaymentGateway, PaymentOrchestrator, serialize_payment
from vissreader.services.pricing import PricingTable, build_pricing_table
from vissreader.services.spend_gate import SpendGate
from vissreader.services.tbank import TBankClient
from vissreader.services.watcher import PaymentWatcher
from vissreader.utils.logging import bind_request_context, clear_request_context, get_logger
from vissreader.utils.time import utcnow


logger = get_logger("web")

RESULT_PAGE = """<html>
  <head><title>{title}</title></head>
  <body>
    <h1>{title}</h1>
    <p>{message}</p>
  </body>
</html>"""


def _error(exc: BillingError) -> JSONResponse:
    return JSONResponse(exc.to_payload(), status_code=exc.http_status)


async def _read_json(request: Request) -> Dict[str, Any]:
    try:
        data = await request.json()
    except Exception:
        raise ValidationError("request body must be valid JSON")
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    return data


def _device_id(raw: Any) -> str:
    device_id = str(raw or "").strip()
    if not device_id:
        raise ValidationError("deviceId is required")
    if len(device_id) > 255:
        raise ValidationError("deviceId is too long")
    return device_id


def _positive_int(raw: Any, field: str) -> int:
    if isinstance(raw, bool):
        raise ValidationError(f"{field} must be a positive integer")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a positive integer")
    if value <= 0 or (isinstance(raw, float) and raw != value):
        raise ValidationError(f"{field} must be a positive integer")
    return value


def _positive_amount(raw: Any) -> Decimal:
    if raw is None or isinstance(raw, bool):
        raise ValidationError("amount is required")
    try:
        value = Decimal(str(raw))
    except InvalidOperation:
        raise ValidationError("amount must be a number")
    if not value.is_finite() or value <= 0:
        raise ValidationError("amount must be greater than 0")
    return value


def create_app(
    settings: Settings | None = None,
    sessionmaker: async_sessionmaker[AsyncSession] | None = None,
    gateway: PaymentGateway | None = None,
    image_provider: ImageProvider | None = None,
    pricing: PricingTable | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="VissReader Backend")
    app.state.settings = settings
    app.state.sessionmaker = sessionmaker or create_sessionmaker(create_engine(settings.database_url))
    app.state.pricing = pricing or build_pricing_table(settings.pricing_tiers_json)
    app.state.gateway = gateway or TBankClient.from_settings(settings)
    app.state.image_provider = image_provider or ImageClient.from_settings(settings)
    app.state.orchestrator = PaymentOrchestrator(
        app.state.sessionmaker,
        app.state.gateway,
        app.state.pricing,
        settings,
    )
    app.state.spend_gate = SpendGate(app.state.sessionmaker, settings)
    app.state.illustrations = IllustrationService(
        app.state.image_provider,
        IllustrationCache(settings.image_cache_size),
    )
    app.state.payment_watcher_task = None

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        bind_request_context(request_id=uuid.uuid4().hex[:12], path=request.url.path)
        try:
            return await call_next(request)
        finally:
            clear_request_context()

    @app.on_event("startup")
    async def startup() -> None:
        if settings.payment_watch_enabled:
            watcher = PaymentWatcher(app.state.orchestrator, settings)
            app.state.payment_watcher_task = asyncio.create_task(watcher.watch())
        logger.info("app_started", payment_watch=settings.payment_watch_enabled)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        task = app.state.payment_watcher_task
        if task:
            task.cancel()
        for client in (app.state.gateway, app.state.image_provider):
            close = getattr(client, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as exc:
                logger.warning("client_close_failed", error=str(exc))

    @app.get("/health")
    async def health():
        return {"status": "ok", "timestamp": utcnow().isoformat()}

    @app.get("/api/payments/balance")
    async def api_balance(request: Request):
        try:
            device_id = _device_id(request.query_params.get("deviceId"))
        except ValidationError as exc:
            return _error(exc)
        async with app.state.sessionmaker() as session:
            balance_service = BalanceService(session, settings)
            user = await balance_service.ensure_user(device_id)
            balance = await balance_service.get_balance(user.id)
        return {"ok": True, "balance": balance, "userId": user.id}

    @app.get("/api/payments/pricing")
    async def api_pricing():
        return {"ok": True, "pricing": app.state.pricing.to_list()}

    @app.post("/api/payments/create")
    async def api_create_payment(request: Request):
        try:
            data = await _read_json(request)
            device_id = _device_id(data.get("deviceId"))
            tier_id = str(data.get("tierId") or "").strip()
            if tier_id:
                tier = app.state.pricing.require(tier_id)
                tokens_amount, amount = tier.tokens, tier.price
            else:
                tokens_amount = _positive_int(data.get("tokensAmount"), "tokensAmount")
                amount = _positive_amount(data.get("amount"))
        except ValidationError as exc:
            return _error(exc)

        async with app.state.sessionmaker() as session:
            user = await BalanceService(session, settings).ensure_user(device_id)

        try:
            payment = await app.state.orchestrator.create_payment(user.id, tokens_amount, amount)
        except ValidationError as exc:
            return _error(exc)
        except GatewayError as exc:
            return JSONResponse(
                {"ok": False, "error": "payment_create_failed", "detail": str(exc)},
                status_code=500,
            )
        except Exception as exc:
            logger.exception("payment_create_crashed", user_id=user.id)
            return JSONResponse(
                {"ok": False, "error": "payment_create_failed", "detail": str(exc)},
                status_code=500,
            )

        return {
            "ok": True,
            "paymentId": payment.payment_id,
            "paymentUrl": payment.payment_url,
            "orderId": payment.order_id,
            "amount": float(payment.amount),
            "tokensAmount": payment.tokens_amount,
            "status": payment.status,
        }

    @app.get("/api/payments/status/{payment_id}")
    async def api_payment_status(payment_id: str):
        payment_id = payment_id.strip()
        orchestrator: PaymentOrchestrator = app.state.orchestrator
        try:
            payment = await orchestrator.get_payment(payment_id)
            if not payment.is_terminal:
                await orchestrator.poll_status(payment_id)
                payment = await orchestrator.get_payment(payment_id)
        except BillingError as exc:
            return _error(exc)
        return {"ok": True, "payment": serialize_payment(payment)}

    @app.get("/api/payments/transactions")
    async def api_transactions(request: Request):
        try:
            device_id = _device_id(request.query_params.get("deviceId"))
            limit_raw = request.query_params.get("limit")
            limit = _positive_int(limit_raw, "limit") if limit_raw else 50
        except ValidationError as exc:
            return _error(exc)
        async with app.state.sessionmaker() as session:
            balance_service = BalanceService(session, settings)
            user = await balance_service.ensure_user(device_id)
            entries = await balance_service.list_transactions(user.id, limit)
        transactions = [serialize_transaction(entry) for entry in entries]
        return {"ok": True, "transactions": transactions, "count": len(transactions)}

    @app.post("/api/payments/tbank/callback")
    async def api_tbank_callback(request: Request):
        # The gateway retries anything but a plain "OK"; internal outcomes are only logged.
        try:
            payload = await _read_json(request)
            outcome = await app.state.orchestrator.handle_callback(payload)
            logger.info(
                "callback_processed",
                payment_id=outcome.payment_id,
                status=outcome.status,
                credited=outcome.credited,
            )
        except BillingError as exc:
            logger.warning("callback_rejected", error=exc.code, detail=exc.message)
        except Exception:
            logger.exception("callback_crashed")
        return PlainTextResponse("OK")

    @app.get("/api/payments/tbank/success")
    async def api_tbank_success(request: Request):
        params = request.query_params
        order_id = params.get("order_id") or params.get("orderId") or params.get("OrderId")
        if order_id:
            payment_id = params.get("payment_id") or params.get("paymentId") or params.get("PaymentId") or ""
            query = urlencode({"orderId": order_id, "paymentId": payment_id})
            return RedirectResponse(f"{settings.app_deep_link_scheme}://payment/success?{query}", status_code=302)
        return HTMLResponse(
            RESULT_PAGE.format(
                title="Payment successful",
                message="Your tokens will be credited within a few minutes.",
            )
        )

    @app.get("/api/payments/tbank/failure")
    async def api_tbank_failure(request: Request):
        params = request.query_params
        order_id = params.get("order_id") or params.get("orderId") or params.get("OrderId")
        if order_id:
            query = urlencode({"orderId": order_id})
            return RedirectResponse(f"{settings.app_deep_link_scheme}://payment/failure?{query}", status_code=302)
        return HTMLResponse(
            RESULT_PAGE.format(
                title="Payment failed",
                message="The payment could not be processed. Please try again.",
            )
        )

    @app.post("/api/generate-image")
    async def api_generate_image(request: Request):
        try:
            data = await _read_json(request)
        except ValidationError as exc:
            return _error(exc)
        try:
            payload = IllustrationRequest.model_validate(data)
        except pydantic.ValidationError as exc:
            details = [err.get("msg") for err in exc.errors()]
            return JSONResponse(
                {"ok": False, "error": "validation_error", "detail": "; ".join(str(d) for d in details)},
                status_code=400,
            )

        mode = request.query_params.get("mode")
        model = (request.query_params.get("model") or settings.image_model_default).strip()
        cost = settings.image_cost_for_mode(mode)
        service: IllustrationService = app.state.illustrations

        try:
            result = await app.state.spend_gate.run(
                payload.device_id,
                cost,
                lambda: service.illustrate(payload, model),
                f"Illustration for {payload.book_title}"[:255],
            )
        except InsufficientFunds as exc:
            return JSONResponse(exc.to_payload(), status_code=402)
        except BillingError as exc:
            return _error(exc)
        except ImageError as exc:
            if exc.status_code == 429:
                return JSONResponse(
                    {"ok": False, "error": "rate_limited", "detail": "Image provider rate limit reached, retry later"},
                    status_code=429,
                )
            logger.warning("illustration_failed", status_code=exc.status_code, error=str(exc))
            return JSONResponse({"ok": False, "error": "image_generation_failed", "detail": str(exc)}, status_code=502)
        except Exception as exc:
            logger.exception("illustration_crashed")
            return JSONResponse({"ok": False, "error": "internal_error", "detail": str(exc)}, status_code=500)

        illustration = result.value
        return {
            "ok": True,
            "imageUrl": illustration.image_url,
            "promptUsed": illustration.prompt_used,
            "cached": illustration.cached,
            "charged": result.charged,
            "cost": cost if result.charged else 0,
            "balance": result.balance,
        }

    return app

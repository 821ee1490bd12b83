"""Payment providers.

A closed set of backends (``ProviderId``) behind one abstract contract:
create, query, refund, verify callback and acknowledge. The sandbox gateways
sign their requests and callbacks with HMAC-SHA256 keyed by the merchant
secret. Every outbound call goes through ``httpx`` with explicit connect/read
timeouts; a timeout or transport failure surfaces as the retryable
``ProviderUnavailable`` and leaves no partial state behind.

``MockProvider`` is always configured and keeps its own in-memory gateway
ledger, so the full checkout and callback flow runs without credentials.
"""

import base64
import enum
import hashlib
import hmac
import json
import logging
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from urllib.parse import parse_qsl, urlencode
from uuid import uuid4

import httpx

from rental_core.config import ProviderCredentials, Settings
from rental_core.errors import (
    InvalidSignature, ProviderError, ProviderNotConfigured, ProviderUnavailable, ValidationError,
)
from rental_core.models import PaymentStatus, utcnow

logger = logging.getLogger(__name__)


class ProviderId(str, enum.Enum):
    ALIPAY_SANDBOX = "alipay_sandbox"
    WECHAT_SANDBOX = "wechat_sandbox"
    MOCK = "mock"


@dataclass
class OrderInfo:
    order_id: str
    amount: int
    title: str
    user_id: str
    description: str | None = None
    return_url: str | None = None
    notify_url: str | None = None


@dataclass
class PaymentResult:
    payment_id: str
    order_id: str
    amount: int
    provider: ProviderId
    payment_url: str | None = None
    qr_code: str | None = None
    message: str = ""


@dataclass
class RefundInfo:
    payment_id: str
    refund_amount: int
    total_amount: int
    reason: str
    refund_id: str | None = None


@dataclass
class RefundResult:
    refund_id: str
    payment_id: str
    refund_amount: int
    message: str = ""


@dataclass
class PaymentCallback:
    payment_id: str
    order_id: str
    trade_no: str
    amount: int
    status: PaymentStatus
    timestamp: datetime = field(default_factory=utcnow)

    def to_payload(self) -> dict:
        return {
            "payment_id": self.payment_id,
            "order_id": self.order_id,
            "trade_no": self.trade_no,
            "amount": self.amount,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "PaymentCallback":
        return cls(
            payment_id=payload["payment_id"],
            order_id=payload["order_id"],
            trade_no=payload["trade_no"],
            amount=int(payload["amount"]),
            status=PaymentStatus(payload["status"]),
            timestamp=datetime.fromisoformat(payload["timestamp"]),
        )


@dataclass
class CallbackRequest:
    """Raw inbound notification exactly as the gateway sent it."""
    body: bytes
    headers: dict = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.body.decode("utf-8")

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


@dataclass
class Ack:
    ok: bool
    status_code: int
    content: str
    media_type: str = "application/json"


def new_payment_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


def to_major_units(amount: int) -> str:
    return f"{Decimal(amount) / 100:.2f}"


def to_minor_units(value: str) -> int:
    return int((Decimal(value) * 100).to_integral_value())


class PaymentProvider(ABC):
    provider_id: ProviderId
    name: str

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        ...

    @abstractmethod
    async def create_payment(self, order_info: OrderInfo) -> PaymentResult:
        ...

    @abstractmethod
    async def query_payment(self, payment_id: str) -> PaymentStatus:
        ...

    @abstractmethod
    async def refund(self, refund_info: RefundInfo) -> RefundResult:
        ...

    @abstractmethod
    async def verify_callback(self, request: CallbackRequest) -> PaymentCallback | None:
        """Return the canonical callback, ``None`` for a non-terminal notice.

        Raises ``InvalidSignature`` when the notification cannot be trusted.
        """

    def acknowledge(self, ok: bool) -> Ack:
        return Ack(ok=ok, status_code=200 if ok else 500, content=json.dumps({"success": ok}))

    def ensure_configured(self):
        if not self.is_configured:
            raise ProviderNotConfigured(self.provider_id.value)


class GatewayProvider(PaymentProvider):
    """Base for real gateways: signed HTTP calls with bounded timeouts."""

    def __init__(self, credentials: ProviderCredentials, http_client: httpx.AsyncClient, settings: Settings):
        self.credentials = credentials
        self._http = http_client
        self._settings = settings

    @property
    def is_configured(self) -> bool:
        return bool(self.credentials.app_id and self.credentials.secret)

    def sign(self, message: str) -> str:
        digest = hmac.new(self.credentials.secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256)
        return digest.hexdigest()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._http.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.TimeoutException as e:
            logger.warning(f"{self.name} timed out: {e}", extra={"provider": self.provider_id.value})
            raise ProviderUnavailable(f"{self.name} did not respond in time")
        except httpx.HTTPStatusError as e:
            logger.error(
                f"{self.name} returned HTTP {e.response.status_code}",
                extra={"provider": self.provider_id.value},
            )
            if e.response.status_code >= 500:
                raise ProviderUnavailable(f"{self.name} is temporarily unavailable")
            raise ProviderError(f"{self.name} rejected the request")
        except httpx.TransportError as e:
            logger.warning(f"{self.name} unreachable: {e}", extra={"provider": self.provider_id.value})
            raise ProviderUnavailable(f"{self.name} is unreachable")


class AlipaySandboxProvider(GatewayProvider):
    provider_id = ProviderId.ALIPAY_SANDBOX
    name = "Alipay Sandbox"

    TRADE_STATUS = {
        "WAIT_BUYER_PAY": PaymentStatus.PENDING,
        "TRADE_SUCCESS": PaymentStatus.SUCCESS,
        "TRADE_FINISHED": PaymentStatus.SUCCESS,
        "TRADE_CLOSED": PaymentStatus.CANCELLED,
    }

    def sign_params(self, params: dict) -> str:
        content = "&".join(
            f"{key}={params[key]}"
            for key in sorted(params)
            if key not in ("sign", "sign_type") and params[key] not in (None, "")
        )
        return self.sign(content)

    def _common_params(self, method: str, biz_content: dict) -> dict:
        return {
            "app_id": self.credentials.app_id,
            "method": method,
            "charset": "utf-8",
            "sign_type": "HMAC-SHA256",
            "timestamp": utcnow().strftime("%Y-%m-%d %H:%M:%S"),
            "version": "1.0",
            "biz_content": json.dumps(biz_content, separators=(",", ":"), ensure_ascii=False),
        }

    async def create_payment(self, order_info: OrderInfo) -> PaymentResult:
        self.ensure_configured()
        payment_id = new_payment_id("pay")
        params = self._common_params("alipay.trade.page.pay", {
            "out_trade_no": payment_id,
            "total_amount": to_major_units(order_info.amount),
            "subject": order_info.title,
            "body": order_info.description or order_info.title,
            "product_code": "FAST_INSTANT_TRADE_PAY",
            "passback_params": order_info.order_id,
        })
        params["return_url"] = order_info.return_url or f"{self._settings.frontend_url}/payment/success"
        params["notify_url"] = order_info.notify_url or (
            f"{self._settings.backend_url}/api/payments/callback/{self.provider_id.value}"
        )
        params["sign"] = self.sign_params(params)

        logger.info(
            f"Alipay sandbox payment {payment_id} created",
            extra={"payment_id": payment_id, "order_id": order_info.order_id, "provider": self.provider_id.value},
        )
        return PaymentResult(
            payment_id=payment_id,
            order_id=order_info.order_id,
            amount=order_info.amount,
            provider=self.provider_id,
            payment_url=f"{self.credentials.gateway_url}?{urlencode(params)}",
            message="Payment created",
        )

    async def _call(self, method: str, biz_content: dict) -> dict:
        params = self._common_params(method, biz_content)
        params["sign"] = self.sign_params(params)
        response = await self._request("POST", self.credentials.gateway_url, data=params)
        body = response.json()
        return body.get(method.replace(".", "_") + "_response", {})

    async def query_payment(self, payment_id: str) -> PaymentStatus:
        self.ensure_configured()
        result = await self._call("alipay.trade.query", {"out_trade_no": payment_id})
        if result.get("code") != "10000":
            # Trade not created on the gateway yet
            return PaymentStatus.PENDING
        return self.TRADE_STATUS.get(result.get("trade_status"), PaymentStatus.PENDING)

    async def refund(self, refund_info: RefundInfo) -> RefundResult:
        self.ensure_configured()
        refund_id = refund_info.refund_id or new_payment_id("refund")
        result = await self._call("alipay.trade.refund", {
            "out_trade_no": refund_info.payment_id,
            "refund_amount": to_major_units(refund_info.refund_amount),
            "refund_reason": refund_info.reason,
            "out_request_no": refund_id,
        })
        if result.get("code") != "10000":
            raise ProviderError(f"Alipay refund rejected: {result.get('sub_msg') or result.get('msg')}")
        return RefundResult(
            refund_id=refund_id,
            payment_id=refund_info.payment_id,
            refund_amount=refund_info.refund_amount,
            message="Refund accepted",
        )

    async def verify_callback(self, request: CallbackRequest) -> PaymentCallback | None:
        self.ensure_configured()
        params = dict(parse_qsl(request.text, keep_blank_values=True))
        signature = params.get("sign", "")
        if not signature or not hmac.compare_digest(signature, self.sign_params(params)):
            raise InvalidSignature("Alipay callback signature mismatch")
        if params.get("app_id") != self.credentials.app_id:
            raise InvalidSignature("Alipay callback issued for another merchant")

        trade_status = params.get("trade_status")
        if trade_status in ("TRADE_SUCCESS", "TRADE_FINISHED"):
            status = PaymentStatus.SUCCESS
        elif trade_status == "TRADE_CLOSED":
            status = PaymentStatus.FAILED
        else:
            return None
        try:
            return PaymentCallback(
                payment_id=params["out_trade_no"],
                order_id=params.get("passback_params") or params["out_trade_no"],
                trade_no=params["trade_no"],
                amount=to_minor_units(params["total_amount"]),
                status=status,
            )
        except (KeyError, ArithmeticError) as e:
            raise InvalidSignature(f"Malformed Alipay callback: {e}")

    def acknowledge(self, ok: bool) -> Ack:
        return Ack(ok=ok, status_code=200 if ok else 500, content="success" if ok else "fail", media_type="text/plain")


class WechatSandboxProvider(GatewayProvider):
    provider_id = ProviderId.WECHAT_SANDBOX
    name = "WeChat Pay Sandbox"

    TRADE_STATE = {
        "NOTPAY": PaymentStatus.PENDING,
        "USERPAYING": PaymentStatus.PROCESSING,
        "SUCCESS": PaymentStatus.SUCCESS,
        "PAYERROR": PaymentStatus.FAILED,
        "CLOSED": PaymentStatus.CANCELLED,
        "REVOKED": PaymentStatus.CANCELLED,
        "REFUND": PaymentStatus.REFUNDED,
    }

    @property
    def is_configured(self) -> bool:
        return bool(self.credentials.app_id and self.credentials.secret and self.credentials.merchant_id)

    def _authorization(self, method: str, path: str, body: str) -> str:
        nonce = secrets.token_hex(16)
        timestamp = str(int(time.time()))
        signature = self.sign(f"{method}\n{path}\n{timestamp}\n{nonce}\n{body}\n")
        return (
            f'WECHATPAY2-SHA256-HMAC mchid="{self.credentials.merchant_id}",'
            f'nonce_str="{nonce}",signature="{signature}",timestamp="{timestamp}"'
        )

    async def _signed(self, method: str, path: str, payload: dict | None = None) -> dict:
        body = json.dumps(payload, separators=(",", ":")) if payload is not None else ""
        response = await self._request(
            method,
            f"{self.credentials.gateway_url}{path}",
            content=body or None,
            headers={
                "Authorization": self._authorization(method, path, body),
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        return response.json() if response.content else {}

    async def create_payment(self, order_info: OrderInfo) -> PaymentResult:
        self.ensure_configured()
        payment_id = new_payment_id("wxpay")
        result = await self._signed("POST", "/v3/pay/transactions/native", {
            "appid": self.credentials.app_id,
            "mchid": self.credentials.merchant_id,
            "description": order_info.title,
            "out_trade_no": payment_id,
            "attach": order_info.order_id,
            "notify_url": order_info.notify_url or (
                f"{self._settings.backend_url}/api/payments/callback/{self.provider_id.value}"
            ),
            "amount": {"total": order_info.amount, "currency": "CNY"},
        })
        code_url = result.get("code_url")
        if not code_url:
            raise ProviderError("WeChat Pay did not return a payment code")

        logger.info(
            f"WeChat sandbox payment {payment_id} created",
            extra={"payment_id": payment_id, "order_id": order_info.order_id, "provider": self.provider_id.value},
        )
        return PaymentResult(
            payment_id=payment_id,
            order_id=order_info.order_id,
            amount=order_info.amount,
            provider=self.provider_id,
            qr_code=code_url,
            message="Payment created",
        )

    async def query_payment(self, payment_id: str) -> PaymentStatus:
        self.ensure_configured()
        result = await self._signed(
            "GET", f"/v3/pay/transactions/out-trade-no/{payment_id}?mchid={self.credentials.merchant_id}"
        )
        return self.TRADE_STATE.get(result.get("trade_state"), PaymentStatus.PENDING)

    async def refund(self, refund_info: RefundInfo) -> RefundResult:
        self.ensure_configured()
        refund_id = refund_info.refund_id or new_payment_id("wxrefund")
        result = await self._signed("POST", "/v3/refund/domestic/refunds", {
            "out_trade_no": refund_info.payment_id,
            "out_refund_no": refund_id,
            "reason": refund_info.reason,
            "amount": {
                "refund": refund_info.refund_amount,
                "total": refund_info.total_amount,
                "currency": "CNY",
            },
        })
        if result.get("status") in ("ABNORMAL", "CLOSED"):
            raise ProviderError(f"WeChat refund rejected with status {result.get('status')}")
        return RefundResult(
            refund_id=result.get("out_refund_no", refund_id),
            payment_id=refund_info.payment_id,
            refund_amount=refund_info.refund_amount,
            message="Refund accepted",
        )

    def callback_signature(self, timestamp: str, nonce: str, body: str) -> str:
        digest = hmac.new(
            self.credentials.secret.encode("utf-8"),
            f"{timestamp}\n{nonce}\n{body}\n".encode("utf-8"),
            hashlib.sha256,
        ).digest()
        return base64.b64encode(digest).decode("ascii")

    async def verify_callback(self, request: CallbackRequest) -> PaymentCallback | None:
        self.ensure_configured()
        timestamp = request.header("Wechatpay-Timestamp")
        nonce = request.header("Wechatpay-Nonce")
        signature = request.header("Wechatpay-Signature")
        if not (timestamp and nonce and signature):
            raise InvalidSignature("WeChat callback is missing signature headers")
        try:
            skew = abs(time.time() - int(timestamp))
        except ValueError:
            raise InvalidSignature("WeChat callback timestamp is malformed")
        if skew > self._settings.callback_tolerance_seconds:
            raise InvalidSignature("WeChat callback timestamp outside tolerance window")
        if not hmac.compare_digest(signature, self.callback_signature(timestamp, nonce, request.text)):
            raise InvalidSignature("WeChat callback signature mismatch")

        try:
            resource = json.loads(request.text)["resource"]
            trade_state = resource["trade_state"]
            if trade_state == "SUCCESS":
                status = PaymentStatus.SUCCESS
            elif trade_state in ("CLOSED", "REVOKED", "PAYERROR"):
                status = PaymentStatus.FAILED
            else:
                return None
            return PaymentCallback(
                payment_id=resource["out_trade_no"],
                order_id=resource.get("attach") or resource["out_trade_no"],
                trade_no=resource["transaction_id"],
                amount=int(resource["amount"]["total"]),
                status=status,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidSignature(f"Malformed WeChat callback: {e}")

    def acknowledge(self, ok: bool) -> Ack:
        body = {"code": "SUCCESS", "message": "OK"} if ok else {"code": "FAIL", "message": "Processing failed"}
        return Ack(ok=ok, status_code=200 if ok else 500, content=json.dumps(body))


class MockProvider(PaymentProvider):
    provider_id = ProviderId.MOCK
    name = "Mock Payment"

    def __init__(self, frontend_url: str = "http://localhost:3000"):
        self.frontend_url = frontend_url
        self._gateway: dict[str, PaymentStatus] = {}

    @property
    def is_configured(self) -> bool:
        return True

    async def create_payment(self, order_info: OrderInfo) -> PaymentResult:
        payment_id = new_payment_id("mock")
        self._gateway[payment_id] = PaymentStatus.PENDING
        logger.info(
            f"Mock payment {payment_id} created",
            extra={"payment_id": payment_id, "order_id": order_info.order_id, "provider": self.provider_id.value},
        )
        return PaymentResult(
            payment_id=payment_id,
            order_id=order_info.order_id,
            amount=order_info.amount,
            provider=self.provider_id,
            payment_url=f"{self.frontend_url}/payment/mock?paymentId={payment_id}",
            message="Mock payment created",
        )

    async def query_payment(self, payment_id: str) -> PaymentStatus:
        return self._gateway.get(payment_id, PaymentStatus.PENDING)

    async def refund(self, refund_info: RefundInfo) -> RefundResult:
        refund_id = refund_info.refund_id or new_payment_id("mock_refund")
        self._gateway[refund_info.payment_id] = PaymentStatus.REFUNDED
        logger.info(
            f"Mock refund {refund_id} processed",
            extra={"payment_id": refund_info.payment_id, "provider": self.provider_id.value},
        )
        return RefundResult(
            refund_id=refund_id,
            payment_id=refund_info.payment_id,
            refund_amount=refund_info.refund_amount,
            message="Mock refund processed",
        )

    async def verify_callback(self, request: CallbackRequest) -> PaymentCallback | None:
        try:
            data = json.loads(request.text or "{}")
            callback = PaymentCallback(
                payment_id=data["paymentId"],
                order_id=data["orderId"],
                trade_no=data.get("tradeNo") or f"mock_{int(time.time() * 1000)}",
                amount=int(data["amount"]),
                status=PaymentStatus(data.get("status", PaymentStatus.SUCCESS.value)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidSignature(f"Malformed mock callback: {e}")
        self._gateway[callback.payment_id] = callback.status
        return callback

    def build_callback(self, payment_id: str, order_id: str, amount: int, trade_no: str | None = None) -> CallbackRequest:
        """Synthesize the notification the mock gateway would send for a successful payment."""
        body = {
            "paymentId": payment_id,
            "orderId": order_id,
            "amount": amount,
            "tradeNo": trade_no or f"mock_{payment_id}",
            "status": PaymentStatus.SUCCESS.value,
        }
        return CallbackRequest(body=json.dumps(body).encode("utf-8"))


class ProviderRegistry:
    """Providers in priority order. The default is the first configured real gateway, else the mock."""

    def __init__(self, providers: list[PaymentProvider], http_client: httpx.AsyncClient | None = None):
        self._providers = {provider.provider_id: provider for provider in providers}
        self._order = [provider.provider_id for provider in providers]
        self._http = http_client
        if ProviderId.MOCK not in self._providers:
            raise ValueError("MockProvider must always be registered")
        self.default = next(
            (
                self._providers[pid] for pid in self._order
                if pid != ProviderId.MOCK and self._providers[pid].is_configured
            ),
            self._providers[ProviderId.MOCK],
        )
        logger.info(f"Default payment provider: {self.default.name}", extra={"provider": self.default.provider_id.value})

    def get(self, provider_id: ProviderId | str | None = None) -> PaymentProvider:
        if provider_id is None:
            return self.default
        try:
            provider = self._providers[ProviderId(provider_id)]
        except (ValueError, KeyError):
            raise ValidationError(f"Unsupported payment method: {provider_id}")
        provider.ensure_configured()
        return provider

    @property
    def mock(self) -> MockProvider:
        return self._providers[ProviderId.MOCK]

    def available_methods(self) -> list[dict]:
        return [
            {
                "method": pid.value,
                "name": self._providers[pid].name,
                "configured": self._providers[pid].is_configured,
            }
            for pid in self._order
        ]

    def status(self) -> dict:
        return {
            "default_provider": self.default.provider_id.value,
            "providers": self.available_methods(),
        }

    async def close(self):
        if self._http is not None:
            await self._http.aclose()


def build_registry(settings: Settings, http_client: httpx.AsyncClient | None = None) -> ProviderRegistry:
    http_client = http_client or httpx.AsyncClient(
        timeout=httpx.Timeout(settings.provider_read_timeout, connect=settings.provider_connect_timeout),
    )
    return ProviderRegistry(
        [
            AlipaySandboxProvider(settings.alipay, http_client, settings),
            WechatSandboxProvider(settings.wechat, http_client, settings),
            MockProvider(settings.frontend_url),
        ],
        http_client=http_client,
    )

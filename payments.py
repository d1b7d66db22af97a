"""
Payment dispatch and gateway callbacks

Cash on delivery confirms the order locally. Every other method asks its
gateway for a hosted payment page; the browser is sent there and the
gateway reports back through a callback that is verified server to server
before the order is marked paid.
"""
import logging
import random
import time
from typing import Dict, Optional, Tuple
from urllib.parse import quote

import requests
from pymongo.database import Database

from config import Settings
from errors import (
    AmountMismatchError,
    GatewayConfigError,
    GatewayInitError,
    GatewayValidationError,
    InvalidTransitionError,
)
from orders import (
    COD_CONFIRMED,
    PENDING_PAYMENT,
    confirm_cash_on_delivery,
    find_order,
    find_order_by_transaction,
    get_order,
    mark_paid,
    mark_payment_failed,
    mark_pending_payment,
    require_shipping,
    sources_for,
)
from schemas import (
    BkashPayment,
    CodPayment,
    NagadPayment,
    PaymentInfo,
    RocketPayment,
    SslcommerzPayment,
)

logger = logging.getLogger(__name__)

VALID_STATUSES = ("VALID", "VALIDATED")

SUCCESS_PATH = "/payment/success"
FAIL_PATH = "/payment/fail"
CONFIRMATION_PATH = "/order-confirmation"


# Gateway error reclassification. Gateways that send a structured code are
# matched on it; SSLCommerz only reports free text, so the substring check
# is the fallback.
CREDENTIAL_ERROR_CODES = ("STORE_CREDENTIAL_ERROR", "STORE_INACTIVE")
CREDENTIAL_ERROR_MARKERS = ("Store Credential Error", "Store is De-active")
CREDENTIAL_ERROR_MESSAGE = (
    "Payment gateway credentials are invalid or the store is inactive. "
    "Please use Cash on Delivery or contact support."
)


def translate_gateway_error(message: Optional[str], code: Optional[str] = None) -> Tuple[str, bool]:
    """Return (user message, is_credential_error) for a gateway failure."""
    if code and code.upper() in CREDENTIAL_ERROR_CODES:
        return CREDENTIAL_ERROR_MESSAGE, True
    text = message or "Payment initialization failed"
    if any(marker in text for marker in CREDENTIAL_ERROR_MARKERS):
        return CREDENTIAL_ERROR_MESSAGE, True
    return text, False


def new_transaction_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{random.randint(0, 9999)}"


class RedirectGateway:
    """Base for gateways that hand back a hosted payment page URL."""

    name = "gateway"

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()

    def init_payment(self, order_id: str, amount: float, payment) -> Dict[str, str]:
        raise NotImplementedError

    def validate(self, val_id: str) -> dict:
        raise GatewayValidationError(f"{self.name} does not support server validation")

    def _post(self, url: str, **kwargs) -> requests.Response:
        try:
            response = self.session.post(url, timeout=self.settings.gateway_timeout, **kwargs)
        except requests.RequestException as e:
            logger.error("%s request to %s failed: %s", self.name, url, e)
            raise GatewayInitError(f"Could not reach {self.name}. Please try again.", status_code=502)
        return response

    def _json(self, response: requests.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            logger.error("%s returned a non-JSON body (HTTP %s)", self.name, response.status_code)
            raise GatewayInitError("Invalid response from payment gateway", status_code=502)
        if not isinstance(data, dict):
            raise GatewayInitError("Invalid response from payment gateway", status_code=502)
        return data

    def _fail(self, message: Optional[str], code: Optional[str] = None):
        text, credential_error = translate_gateway_error(message, code)
        logger.warning("%s init failed: %s", self.name, message)
        raise GatewayInitError(text, credential_error=credential_error)


class SslcommerzGateway(RedirectGateway):
    name = "SSLCommerz"

    SANDBOX_HOST = "https://sandbox.sslcommerz.com"
    LIVE_HOST = "https://securepay.sslcommerz.com"

    @property
    def host(self) -> str:
        return self.SANDBOX_HOST if self.settings.sslcommerz_sandbox else self.LIVE_HOST

    def _credentials(self) -> Tuple[str, str]:
        store_id = self.settings.sslcommerz_store_id
        store_passwd = self.settings.sslcommerz_store_password
        if not store_id:
            raise GatewayConfigError("Invalid SSLCommerz store ID. Please check your environment variables.")
        if not store_passwd:
            raise GatewayConfigError("Invalid SSLCommerz store password. Please check your environment variables.")
        return store_id, store_passwd

    def init_payment(self, order_id: str, amount: float, payment: SslcommerzPayment) -> Dict[str, str]:
        store_id, store_passwd = self._credentials()
        tran_id = new_transaction_id("SSLCZ")
        customer = payment.customer
        base = self.settings.app_url
        form = {
            "store_id": store_id,
            "store_passwd": store_passwd,
            "total_amount": f"{amount:.2f}",
            "currency": self.settings.currency,
            "tran_id": tran_id,
            "success_url": f"{base}/api/sslcommerz/success",
            "fail_url": f"{base}/api/sslcommerz/fail",
            "cancel_url": f"{base}/api/sslcommerz/cancel",
            "shipping_method": "NO",
            "product_name": "Order Payment",
            "product_category": "E-commerce",
            "product_profile": "general",
            "cus_name": customer.name,
            "cus_email": customer.email,
            "cus_add1": customer.address,
            "cus_city": customer.city,
            "cus_postcode": customer.postal_code,
            "cus_country": customer.country,
            "cus_phone": customer.phone,
            # round-tripped by the gateway to the success callback
            "value_a": order_id,
            "value_b": "payment",
        }
        url = f"{self.host}/gwprocess/v4/api.php"
        logger.info("Initiating SSLCommerz payment %s for order %s", tran_id, order_id)
        data = self._json(self._post(url, data=form))
        if data.get("status") == "SUCCESS" and data.get("GatewayPageURL"):
            return {"payment_url": data["GatewayPageURL"], "tran_id": tran_id}
        self._fail(data.get("failedreason"), data.get("error_code"))

    def validate(self, val_id: str) -> dict:
        store_id, store_passwd = self._credentials()
        url = f"{self.host}/validator/api/validationserverAPI.php"
        try:
            response = self.session.post(
                url,
                data={"store_id": store_id, "store_passwd": store_passwd, "val_id": val_id, "format": "json"},
                timeout=self.settings.gateway_timeout,
            )
        except requests.RequestException as e:
            raise GatewayValidationError(f"Validation request failed: {e}")
        if not response.ok:
            raise GatewayValidationError(f"Validation endpoint answered HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError:
            raise GatewayValidationError("Validation endpoint returned a non-JSON body")
        if not isinstance(data, dict):
            raise GatewayValidationError("Validation endpoint returned an unexpected body")
        return data


class BkashGateway(RedirectGateway):
    name = "bKash"

    SANDBOX_HOST = "https://tokenized.sandbox.bka.sh/v1.2.0-beta/tokenized/checkout"
    LIVE_HOST = "https://tokenized.pay.bka.sh/v1.2.0-beta/tokenized/checkout"

    @property
    def host(self) -> str:
        return self.SANDBOX_HOST if self.settings.bkash_sandbox else self.LIVE_HOST

    def _grant_token(self) -> str:
        s = self.settings
        if not (s.bkash_app_key and s.bkash_app_secret and s.bkash_username and s.bkash_password):
            raise GatewayConfigError("Payment gateway configuration error. bKash credentials are missing.")
        response = self._post(
            f"{self.host}/token/grant",
            json={"app_key": s.bkash_app_key, "app_secret": s.bkash_app_secret},
            headers={"Accept": "application/json", "username": s.bkash_username, "password": s.bkash_password},
        )
        data = self._json(response)
        token = data.get("id_token")
        if not token:
            logger.error("bKash token grant failed: %s", data.get("statusMessage"))
            raise GatewayInitError("Failed to authenticate with bKash", status_code=502)
        return token

    def init_payment(self, order_id: str, amount: float, payment: BkashPayment) -> Dict[str, str]:
        token = self._grant_token()
        invoice = new_transaction_id("Inv")
        body = {
            "mode": "0011",
            "payerReference": payment.payer_reference or payment.customer.phone,
            "callbackURL": f"{self.settings.app_url}/api/bkash/callback",
            "amount": f"{amount:.2f}",
            "currency": self.settings.currency,
            "intent": "sale",
            "merchantInvoiceNumber": invoice,
        }
        logger.info("Initiating bKash payment %s for order %s", invoice, order_id)
        response = self._post(
            f"{self.host}/create",
            json=body,
            headers={"Accept": "application/json", "Authorization": token, "X-APP-Key": self.settings.bkash_app_key},
        )
        data = self._json(response)
        if data.get("paymentID") and data.get("bkashURL"):
            return {"payment_url": data["bkashURL"], "tran_id": data["paymentID"]}
        self._fail(data.get("statusMessage"), data.get("statusCode"))


class HostedCheckoutGateway(RedirectGateway):
    """
    Mobile-money providers reached through a hosted checkout service that
    answers `{success, paymentUrl}`.
    """

    def __init__(self, name: str, init_url: Optional[str], settings: Settings, session: Optional[requests.Session] = None):
        super().__init__(settings, session)
        self.name = name
        self.init_url = init_url

    def init_payment(self, order_id: str, amount: float, payment) -> Dict[str, str]:
        if not self.init_url:
            raise GatewayConfigError(f"Payment gateway configuration error. {self.name} is not configured.")
        tran_id = new_transaction_id(self.name.upper())
        body = {
            "orderId": order_id,
            "amount": f"{amount:.2f}",
            "currency": self.settings.currency,
            "tranId": tran_id,
            "callbackUrl": f"{self.settings.app_url}/api/{self.name.lower()}/callback",
            "customer": payment.customer.model_dump(),
        }
        logger.info("Initiating %s payment %s for order %s", self.name, tran_id, order_id)
        data = self._json(self._post(self.init_url, json=body))
        if data.get("success") and data.get("paymentUrl"):
            return {"payment_url": data["paymentUrl"], "tran_id": data.get("tranId") or tran_id}
        self._fail(data.get("message"), data.get("code"))


def build_gateways(settings: Settings, session: Optional[requests.Session] = None) -> Dict[type, RedirectGateway]:
    """Map each redirect payment variant to the gateway that serves it."""
    return {
        SslcommerzPayment: SslcommerzGateway(settings, session),
        BkashPayment: BkashGateway(settings, session),
        RocketPayment: HostedCheckoutGateway("Rocket", settings.rocket_init_url, settings, session),
        NagadPayment: HostedCheckoutGateway("Nagad", settings.nagad_init_url, settings, session),
    }


def _same_amount(a: float, b: float) -> bool:
    return round(float(a) * 100) == round(float(b) * 100)


def initiate_payment(
    db: Database,
    order_id: str,
    amount: float,
    payment,
    gateways: Dict[type, RedirectGateway],
    settings: Settings,
) -> dict:
    """
    Start paying for an order.

    Returns `{"method": "cod", "redirect": ...}` for cash on delivery, or
    `{"method", "payment_url", "tran_id"}` for a gateway; the caller must
    send the browser to `payment_url`.
    """
    order = get_order(db, order_id)
    if not _same_amount(amount, order["total_price"]):
        raise AmountMismatchError(
            f"Payment amount {amount:.2f} does not match order total {order['total_price']:.2f}"
        )

    if isinstance(payment, CodPayment):
        customer = None
        # an order created with an address may confirm COD without repeating it
        if payment.customer is not None or not order.get("shipping_address"):
            customer = require_shipping(payment.customer)
        payment_info = PaymentInfo(
            method="cod", gateway="Cash on Delivery", amount=order["total_price"], currency=settings.currency,
        )
        updated = confirm_cash_on_delivery(
            db, order, payment_info.model_dump(), customer.model_dump() if customer else None,
        )
        logger.info("Order %s confirmed for cash on delivery", order_id)
        return {
            "method": "cod",
            "order_id": updated["_id"],
            "status": COD_CONFIRMED,
            "redirect": f"{CONFIRMATION_PATH}?orderId={quote(updated['_id'])}",
        }

    customer = require_shipping(payment.customer)
    if order["status"] not in sources_for(PENDING_PAYMENT):
        raise InvalidTransitionError(f"Order is {order['status']}, can't start a payment")

    gateway = gateways.get(type(payment))
    if gateway is None:
        raise GatewayConfigError(f"No gateway configured for {payment.method}")

    session = gateway.init_payment(order["_id"], order["total_price"], payment)
    payment_info = PaymentInfo(
        method=payment.method,
        gateway=gateway.name,
        tran_id=session["tran_id"],
        amount=order["total_price"],
        currency=settings.currency,
    )
    mark_pending_payment(db, order, payment_info.model_dump(), customer.model_dump())
    return {
        "method": payment.method,
        "order_id": order["_id"],
        "status": PENDING_PAYMENT,
        "payment_url": session["payment_url"],
        "tran_id": session["tran_id"],
    }


def _belongs_to(order: dict, tran_id: str, validation: dict) -> bool:
    """The validated transaction must be the one started for this order, for its total."""
    expected = order.get("transaction_id")
    if not expected or tran_id != expected:
        return False
    if validation.get("tran_id", tran_id) != expected:
        return False
    amount = validation.get("amount")
    if amount is not None and not _same_amount(amount, order["total_price"]):
        return False
    return True


def handle_payment_success(
    db: Database,
    gateway: RedirectGateway,
    settings: Settings,
    tran_id: Optional[str],
    order_ref: Optional[str],
    val_id: Optional[str] = None,
) -> str:
    """
    Verify a gateway success callback and return where to redirect the user.

    Never raises: the caller is the gateway, and it only ever gets a
    redirect back.
    """
    fail_url = f"{settings.app_url}{FAIL_PATH}"
    try:
        if not tran_id or not order_ref:
            logger.warning("Success callback without tran_id or order reference")
            return fail_url
        data = gateway.validate(val_id or tran_id)
        status = data.get("status")
        if status not in VALID_STATUSES:
            logger.warning("Transaction %s failed validation with status %s", tran_id, status)
            return fail_url
        order = find_order(db, order_ref)
        if not order:
            logger.warning("Validated transaction %s but order %s was not found", tran_id, order_ref)
            return fail_url
        if not _belongs_to(order, tran_id, data):
            logger.warning("Transaction %s does not match order %s, not marking it paid", tran_id, order_ref)
            return fail_url
        mark_paid(db, order, tran_id, data)
        return f"{settings.app_url}{SUCCESS_PATH}?orderId={quote(order_ref)}"
    except Exception:
        logger.exception("Error processing payment success callback for %s", tran_id)
        return fail_url


def handle_payment_failure(db: Database, settings: Settings, tran_id: Optional[str], status: Optional[str]) -> str:
    """Record a failed or cancelled gateway payment. Always returns the failure page."""
    fail_url = f"{settings.app_url}{FAIL_PATH}"
    try:
        if tran_id:
            order = find_order_by_transaction(db, tran_id)
            if order:
                mark_payment_failed(db, order, tran_id, status)
            else:
                logger.warning("Failure callback for unknown transaction %s", tran_id)
    except Exception:
        logger.exception("Error processing payment failure callback for %s", tran_id)
    return fail_url

import pytest
import requests

from errors import AmountMismatchError, GatewayConfigError, GatewayInitError, InvalidTransitionError, ValidationError
from orders import create_order, get_order, mark_pending_payment
from payments import (
    CREDENTIAL_ERROR_MESSAGE,
    build_gateways,
    handle_payment_failure,
    handle_payment_success,
    initiate_payment,
    translate_gateway_error,
)
from schemas import (
    BkashPayment,
    CodPayment,
    NagadPayment,
    OrderLine,
    RocketPayment,
    ShippingAddress,
    SslcommerzPayment,
)
from tests.conftest import FakeResponse

SSL_INIT = "gwprocess/v4/api.php"
SSL_VALIDATE = "validationserverAPI.php"


@pytest.fixture
def order(db, catalog):
    return create_order(db, "u1", [OrderLine(product_id="P1", quantity=2)])


@pytest.fixture
def customer(shipping):
    return ShippingAddress(**shipping)


def test_translate_gateway_error():
    assert translate_gateway_error("Store Credential Error") == (CREDENTIAL_ERROR_MESSAGE, True)
    assert translate_gateway_error("Sorry, Store is De-active now")[1] is True
    assert translate_gateway_error("anything", code="STORE_INACTIVE") == (CREDENTIAL_ERROR_MESSAGE, True)
    assert translate_gateway_error("Invalid amount") == ("Invalid amount", False)
    assert translate_gateway_error(None) == ("Payment initialization failed", False)


def test_cod_never_calls_a_gateway(db, order, customer, gateways, session, settings):
    result = initiate_payment(db, order["_id"], 30.0, CodPayment(customer=customer), gateways, settings)
    assert result["method"] == "cod"
    assert result["redirect"] == f"/order-confirmation?orderId={order['_id']}"
    assert session.calls == []
    stored = get_order(db, order["_id"])
    assert stored["status"] == "cash_on_delivery_confirmed"
    assert stored["payment_info"]["gateway"] == "Cash on Delivery"
    assert stored["shipping_address"]["city"] == "Dhaka"


def test_cod_requires_shipping_details(db, order, gateways, settings):
    with pytest.raises(ValidationError):
        initiate_payment(db, order["_id"], 30.0, CodPayment(), gateways, settings)
    assert get_order(db, order["_id"])["status"] == "created"


def test_amount_mismatch_rejected_before_gateway(db, order, customer, gateways, session, settings):
    with pytest.raises(AmountMismatchError):
        initiate_payment(db, order["_id"], 25.0, SslcommerzPayment(customer=customer), gateways, settings)
    with pytest.raises(AmountMismatchError):
        initiate_payment(db, order["_id"], 25.0, CodPayment(customer=customer), gateways, settings)
    assert session.calls == []
    assert get_order(db, order["_id"])["status"] == "created"


def test_sslcommerz_dispatch(db, order, customer, gateways, session, settings):
    session.on(SSL_INIT, FakeResponse({"status": "SUCCESS", "GatewayPageURL": "https://sandbox.sslcommerz.com/pay/abc"}))
    result = initiate_payment(db, order["_id"], 30.0, SslcommerzPayment(customer=customer), gateways, settings)
    assert result["payment_url"] == "https://sandbox.sslcommerz.com/pay/abc"
    assert result["tran_id"].startswith("SSLCZ_")

    method, url, kwargs = session.calls[0]
    assert url == "https://sandbox.sslcommerz.com/gwprocess/v4/api.php"
    form = kwargs["data"]
    assert form["value_a"] == order["_id"]
    assert form["total_amount"] == "30.00"
    assert form["success_url"] == "http://shop.test/api/sslcommerz/success"

    stored = get_order(db, order["_id"])
    assert stored["status"] == "pending_payment"
    assert stored["transaction_id"] == result["tran_id"]
    assert stored["payment_info"]["status"] == "PENDING"


def test_sslcommerz_credential_error_is_rewritten(db, order, customer, gateways, session, settings):
    session.on(SSL_INIT, FakeResponse({"status": "FAILED", "failedreason": "Store Credential Error Or Store is De-active"}))
    with pytest.raises(GatewayInitError) as exc:
        initiate_payment(db, order["_id"], 30.0, SslcommerzPayment(customer=customer), gateways, settings)
    assert exc.value.credential_error
    assert "Cash on Delivery" in exc.value.message
    assert get_order(db, order["_id"])["status"] == "created"


def test_sslcommerz_other_errors_pass_through(db, order, customer, gateways, session, settings):
    session.on(SSL_INIT, FakeResponse({"status": "FAILED", "failedreason": "Invalid Information"}))
    with pytest.raises(GatewayInitError) as exc:
        initiate_payment(db, order["_id"], 30.0, SslcommerzPayment(customer=customer), gateways, settings)
    assert exc.value.message == "Invalid Information"
    assert not exc.value.credential_error


def test_gateway_unreachable(db, order, customer, gateways, session, settings):
    session.on(SSL_INIT, requests.ConnectTimeout("timed out"))
    with pytest.raises(GatewayInitError) as exc:
        initiate_payment(db, order["_id"], 30.0, SslcommerzPayment(customer=customer), gateways, settings)
    assert exc.value.status_code == 502


def test_missing_credentials(db, order, customer, session, settings):
    bare = build_gateways(settings.model_copy(update={"sslcommerz_store_id": None}), session)
    with pytest.raises(GatewayConfigError):
        initiate_payment(db, order["_id"], 30.0, SslcommerzPayment(customer=customer), bare, settings)
    assert session.calls == []


def test_bkash_dispatch(db, order, customer, gateways, session, settings):
    session.on("token/grant", FakeResponse({"id_token": "tok"}))
    session.on("/create", FakeResponse({"paymentID": "PAY123", "bkashURL": "https://bka.sh/pay/PAY123"}))
    result = initiate_payment(db, order["_id"], 30.0, BkashPayment(customer=customer), gateways, settings)
    assert result == {
        "method": "bkash",
        "order_id": order["_id"],
        "status": "pending_payment",
        "payment_url": "https://bka.sh/pay/PAY123",
        "tran_id": "PAY123",
    }
    create_call = session.calls[1]
    assert create_call[2]["headers"]["Authorization"] == "tok"
    assert create_call[2]["json"]["payerReference"] == customer.phone


def test_bkash_token_failure(db, order, customer, gateways, session, settings):
    session.on("token/grant", FakeResponse({"statusMessage": "Invalid app key"}))
    with pytest.raises(GatewayInitError):
        initiate_payment(db, order["_id"], 30.0, BkashPayment(customer=customer), gateways, settings)


@pytest.mark.parametrize("payment_cls, host", [(RocketPayment, "rocket.test"), (NagadPayment, "nagad.test")])
def test_hosted_checkout_dispatch(db, order, customer, gateways, session, settings, payment_cls, host):
    session.on(host, FakeResponse({"success": True, "paymentUrl": f"https://{host}/checkout/1"}))
    result = initiate_payment(db, order["_id"], 30.0, payment_cls(customer=customer), gateways, settings)
    assert result["payment_url"] == f"https://{host}/checkout/1"
    assert session.calls[0][2]["json"]["orderId"] == order["_id"]


def test_hosted_checkout_failure_message(db, order, customer, gateways, session, settings):
    session.on("nagad.test", FakeResponse({"success": False, "message": "Merchant not active"}))
    with pytest.raises(GatewayInitError) as exc:
        initiate_payment(db, order["_id"], 30.0, NagadPayment(customer=customer), gateways, settings)
    assert exc.value.message == "Merchant not active"


def test_cannot_pay_a_paid_order(db, order, customer, gateways, session, settings):
    db["order"].update_many({}, {"$set": {"status": "paid"}})
    with pytest.raises(InvalidTransitionError):
        initiate_payment(db, order["_id"], 30.0, SslcommerzPayment(customer=customer), gateways, settings)
    assert session.calls == []


# Success callback

def _pending(db, order, tran_id="SSLCZ_1"):
    mark_pending_payment(db, order, {"method": "sslcommerz", "tran_id": tran_id, "amount": 30.0})


def test_valid_callback_marks_paid(db, order, gateways, session, settings):
    _pending(db, order)
    session.on(SSL_VALIDATE, FakeResponse({"status": "VALID", "tran_id": "SSLCZ_1", "amount": "30.00"}))
    url = handle_payment_success(db, gateways[SslcommerzPayment], settings, "SSLCZ_1", order["_id"], "VAL1")
    assert url == f"http://shop.test/payment/success?orderId={order['_id']}"
    assert session.calls[0][2]["data"]["val_id"] == "VAL1"
    stored = get_order(db, order["_id"])
    assert stored["status"] == "paid"
    assert stored["payment_status"] == "completed"
    assert stored["payment_info"]["validation_data"]["amount"] == "30.00"


def test_validated_status_is_accepted(db, order, gateways, session, settings):
    _pending(db, order)
    session.on(SSL_VALIDATE, FakeResponse({"status": "VALIDATED"}))
    url = handle_payment_success(db, gateways[SslcommerzPayment], settings, "SSLCZ_1", order["_id"])
    assert "/payment/success" in url
    # without a val_id the transaction id is validated
    assert session.calls[0][2]["data"]["val_id"] == "SSLCZ_1"


def test_rejected_validation_redirects_to_failure(db, order, gateways, session, settings):
    _pending(db, order)
    session.on(SSL_VALIDATE, FakeResponse({"status": "FAILED"}))
    url = handle_payment_success(db, gateways[SslcommerzPayment], settings, "SSLCZ_1", order["_id"])
    assert url == "http://shop.test/payment/fail"
    assert get_order(db, order["_id"])["status"] == "pending_payment"


@pytest.mark.parametrize("response", [
    requests.ConnectionError("boom"),
    FakeResponse({"status": "VALID"}, status_code=500),
    FakeResponse(None, text="<html>oops</html>"),
])
def test_validation_errors_never_raise(db, order, gateways, session, settings, response):
    _pending(db, order)
    session.on(SSL_VALIDATE, response)
    url = handle_payment_success(db, gateways[SslcommerzPayment], settings, "SSLCZ_1", order["_id"])
    assert url.endswith("/payment/fail")
    assert get_order(db, order["_id"])["status"] == "pending_payment"


def test_unknown_order_redirects_to_failure(db, order, gateways, session, settings):
    session.on(SSL_VALIDATE, FakeResponse({"status": "VALID"}))
    url = handle_payment_success(db, gateways[SslcommerzPayment], settings, "SSLCZ_1", "no-such-order")
    assert url.endswith("/payment/fail")


def test_missing_callback_fields(db, gateways, session, settings):
    assert handle_payment_success(db, gateways[SslcommerzPayment], settings, None, "x").endswith("/payment/fail")
    assert session.calls == []


def test_repeat_callback_is_idempotent(db, order, gateways, session, settings):
    _pending(db, order)
    session.on(SSL_VALIDATE, FakeResponse({"status": "VALID"}))
    gateway = gateways[SslcommerzPayment]
    first = handle_payment_success(db, gateway, settings, "SSLCZ_1", order["_id"])
    paid_at = get_order(db, order["_id"])["payment_info"]["paid_at"]
    second = handle_payment_success(db, gateway, settings, "SSLCZ_1", order["_id"])
    assert first == second
    assert get_order(db, order["_id"])["payment_info"]["paid_at"] == paid_at


def test_failure_callback_marks_failed(db, order, settings):
    _pending(db, order, "SSLCZ_9")
    url = handle_payment_failure(db, settings, "SSLCZ_9", "FAILED")
    assert url == "http://shop.test/payment/fail"
    stored = get_order(db, order["_id"])
    assert stored["status"] == "payment_failed"
    assert stored["payment_status"] == "failed"


def test_failure_callback_for_unknown_transaction(db, settings):
    assert handle_payment_failure(db, settings, "nope", "FAILED").endswith("/payment/fail")
    assert handle_payment_failure(db, settings, None, None).endswith("/payment/fail")


def test_validated_transaction_must_belong_to_the_order(db, catalog, gateways, session, settings):
    mine = create_order(db, "u1", [OrderLine(product_id="P1", quantity=1)])
    theirs = create_order(db, "u2", [OrderLine(product_id="P2", quantity=5)])
    _pending(db, mine, "SSLCZ_A")
    _pending(db, theirs, "SSLCZ_B")
    session.on(SSL_VALIDATE, FakeResponse({"status": "VALID", "tran_id": "SSLCZ_A", "amount": "15.00"}))
    gateway = gateways[SslcommerzPayment]

    url = handle_payment_success(db, gateway, settings, "SSLCZ_A", theirs["_id"], "VAL_A")
    assert url == "http://shop.test/payment/fail"
    assert get_order(db, theirs["_id"])["status"] == "pending_payment"

    # the form tran_id naming the other order doesn't help when validation reports SSLCZ_A
    url = handle_payment_success(db, gateway, settings, "SSLCZ_B", theirs["_id"], "VAL_A")
    assert url.endswith("/payment/fail")
    assert get_order(db, theirs["_id"])["status"] == "pending_payment"

    url = handle_payment_success(db, gateway, settings, "SSLCZ_A", mine["_id"], "VAL_A")
    assert "/payment/success" in url
    assert get_order(db, mine["_id"])["status"] == "paid"


def test_validated_amount_must_match_order_total(db, order, gateways, session, settings):
    _pending(db, order)
    session.on(SSL_VALIDATE, FakeResponse({"status": "VALID", "tran_id": "SSLCZ_1", "amount": "3.00"}))
    url = handle_payment_success(db, gateways[SslcommerzPayment], settings, "SSLCZ_1", order["_id"], "VAL1")
    assert url.endswith("/payment/fail")
    assert get_order(db, order["_id"])["status"] == "pending_payment"


def test_callback_for_order_without_a_payment(db, order, gateways, session, settings):
    session.on(SSL_VALIDATE, FakeResponse({"status": "VALID", "tran_id": "SSLCZ_1"}))
    url = handle_payment_success(db, gateways[SslcommerzPayment], settings, "SSLCZ_1", order["_id"])
    assert url.endswith("/payment/fail")
    assert get_order(db, order["_id"])["status"] == "created"

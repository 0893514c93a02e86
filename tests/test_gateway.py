"""Tests for the payment gateway client and its response parsers."""

import asyncio
import json
from urllib.parse import parse_qs

import httpx
import pytest

from cardshop.config import GatewayConfig
from cardshop.payment.gateway import (
    NETWORK_ERROR, GatewayClient, decode_html, minor_to_major,
    parse_create_order_response, parse_html_redirect, parse_json_response,
)
from cardshop.payment.signature import close_order_sign, create_order_sign

BASE = "https://pay.example.com"
SECRET = "s3cret"


def run(coro):
    return asyncio.run(coro)


def make_client(handler):
    config = GatewayConfig(
        base_url=BASE, secret_key=SECRET,
        notify_url="http://shop/notify", return_url="http://shop/return",
        timeout=1.0,
    )
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GatewayClient(config, http)


class TestMinorToMajor:
    @pytest.mark.parametrize("minor,major", [
        (1500, "15"), (1550, "15.5"), (1505, "15.05"), (1, "0.01"),
        (100000, "1000"),
    ])
    def test_exact_decimal(self, minor, major):
        assert minor_to_major(minor) == major


class TestParsers:
    def test_json_success(self):
        body = json.dumps(
            {"code": 1, "data": {"payUrl": "https://x/p", "orderId": "C1"}}
        ).encode()
        assert parse_json_response(body) == {
            "success": True, "pay_url": "https://x/p", "cloud_order_id": "C1",
        }

    def test_json_rejection_carries_msg(self):
        body = json.dumps({"code": -1, "msg": "bad price"}).encode()
        result = parse_json_response(body)
        assert result["success"] is False
        assert result["error_kind"] == "rejected"
        assert result["error"] == "bad price"

    def test_json_success_without_pay_url_is_unparseable(self):
        body = json.dumps({"code": 1, "data": {}}).encode()
        assert parse_json_response(body)["error_kind"] == "unparseable"

    def test_not_json_falls_through(self):
        assert parse_json_response(b"<html></html>") is None
        assert parse_json_response(b"[1, 2]") is None

    def test_html_redirect_relative(self):
        html = "<script>window.location.href='/pay/cashier?orderId=C42&x=1';</script>"
        assert parse_html_redirect(html, BASE) == {
            "success": True,
            "pay_url": BASE + "/pay/cashier?orderId=C42&x=1",
            "cloud_order_id": "C42",
        }

    def test_html_redirect_absolute_kept(self):
        html = 'window.location.href = "https://cdn.pay/c?orderId=Z"'
        result = parse_html_redirect(html, BASE)
        assert result["pay_url"] == "https://cdn.pay/c?orderId=Z"
        assert result["cloud_order_id"] == "Z"

    def test_html_without_redirect(self):
        assert parse_html_redirect("<p>hello</p>", BASE) is None

    def test_decode_gbk(self):
        text = "<meta charset=gbk>支付"
        assert decode_html(text.encode("gbk")) == text

    def test_decode_utf8_default(self):
        assert decode_html("支付".encode("utf-8")) == "支付"

    def test_anything_else_unparseable(self):
        result = parse_create_order_response(b"Service Unavailable", BASE)
        assert result["success"] is False
        assert result["error_kind"] == "unparseable"


class TestCreateOrder:
    def test_request_is_signed_form(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["form"] = {
                k: v[0] for k, v in parse_qs(request.content.decode()).items()
            }
            return httpx.Response(200, json={
                "code": 1, "data": {"payUrl": "https://x/p", "orderId": "C1"},
            })

        client = make_client(handler)
        result = run(client.create_order(
            "ORD1", "prod-1", "alipay", 1500, "a@b.co"
        ))

        assert result["success"] is True
        assert seen["url"] == BASE + "/createOrder"
        form = seen["form"]
        assert form["payId"] == "ORD1"
        assert form["type"] == "2"
        assert form["price"] == "15"
        assert form["isHtml"] == "1"
        assert form["notifyUrl"] == "http://shop/notify"
        assert form["returnUrl"] == "http://shop/return"
        assert json.loads(form["param"]) == {
            "productId": "prod-1", "contactInfo": "a@b.co", "orderId": "ORD1",
        }
        assert form["sign"] == create_order_sign(
            "ORD1", form["param"], 2, "15", SECRET
        )

    def test_wechat_type_code(self):
        seen = {}

        def handler(request):
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={
                "code": 1, "data": {"payUrl": "https://x/p"},
            })

        run(make_client(handler).create_order(
            "ORD1", "p", "wechat", 1550, "a@b.co"
        ))
        assert seen["form"]["type"] == ["1"]
        assert seen["form"]["price"] == ["15.5"]

    def test_html_cashier_response(self):
        def handler(request):
            html = (
                "<html><head><meta charset='gb2312'></head><body><script>"
                "window.location.href='/cashier?orderId=CLOUD7';"
                "</script></body></html>"
            )
            return httpx.Response(200, content=html.encode("gbk"))

        result = run(make_client(handler).create_order(
            "ORD1", "p", "alipay", 1500, "a@b.co"
        ))
        assert result == {
            "success": True,
            "pay_url": BASE + "/cashier?orderId=CLOUD7",
            "cloud_order_id": "CLOUD7",
        }

    def test_timeout_is_network_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        result = run(make_client(handler).create_order(
            "ORD1", "p", "alipay", 1500, "a@b.co"
        ))
        assert result == {
            "success": False, "error": NETWORK_ERROR, "error_kind": "network",
        }

    def test_http_error_status_is_rejection(self):
        result = run(make_client(
            lambda request: httpx.Response(500, text="oops")
        ).create_order("ORD1", "p", "alipay", 1500, "a@b.co"))
        assert result["success"] is False
        assert result["error_kind"] == "rejected"

    def test_business_rejection(self):
        result = run(make_client(
            lambda request: httpx.Response(200, json={"code": 0, "msg": "no"})
        ).create_order("ORD1", "p", "alipay", 1500, "a@b.co"))
        assert result == {
            "success": False, "error": "no", "error_kind": "rejected",
        }

    def test_unknown_payment_type(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200)

        result = run(make_client(handler).create_order(
            "ORD1", "p", "paypal", 1500, "a@b.co"
        ))
        assert result["success"] is False
        assert calls == []


class TestCloseOrder:
    def test_success_on_code_1(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={"code": 1})

        result = run(make_client(handler).close_order("CLOUD7"))
        assert result == {"success": True}
        assert seen["url"] == BASE + "/closeOrder"
        assert seen["form"]["orderId"] == ["CLOUD7"]
        assert seen["form"]["sign"] == [close_order_sign("CLOUD7", SECRET)]

    def test_other_code_fails(self):
        result = run(make_client(
            lambda request: httpx.Response(200, json={"code": 0, "msg": "gone"})
        ).close_order("CLOUD7"))
        assert result["success"] is False
        assert result["error"] == "gone"

    def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = run(make_client(handler).close_order("CLOUD7"))
        assert result["error_kind"] == "network"

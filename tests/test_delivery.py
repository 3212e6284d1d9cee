from __future__ import annotations

import httpx
import pytest
import respx

from repogrowth.config import DeliveryConfig
from repogrowth.delivery import DeliveryReport, HttpDeliveryClient
from repogrowth.exceptions import DeliveryError

URL = "https://mail.example.test/digests"


def _config(**overrides) -> DeliveryConfig:
    cfg = dict(
        url=URL, api_key="k-123", timeout_s=5.0, max_items=10, max_attempts=2, max_backoff_s=0
    )
    cfg.update(overrides)
    return DeliveryConfig(**cfg)


@respx.mock
def test_send_maps_report():
    route = respx.post(URL).mock(
        return_value=httpx.Response(
            200,
            json={
                "status": "sent",
                "delivered": 2,
                "bounces": [
                    {"email": "a@acme.io", "type": "permanent", "diagnostic": "5.1.1"},
                    {"address": "b@acme.io", "kind": "transient"},
                    "c@acme.io",
                ],
            },
        )
    )
    report = HttpDeliveryClient(_config()).send({"job_id": 1, "recipients": []})

    assert route.called
    assert route.calls.last.request.headers["Authorization"] == "Bearer k-123"
    assert report.status == "delivered"
    assert report.delivered == 2
    assert [(b.address, b.kind) for b in report.bounces] == [
        ("a@acme.io", "hard"),
        ("b@acme.io", "soft"),
        ("c@acme.io", "hard"),
    ]
    assert [b.address for b in report.hard_bounces] == ["a@acme.io", "c@acme.io"]


def test_failed_status_maps_to_failed():
    assert DeliveryReport.from_payload({"status": "Rejected"}).status == "failed"
    assert DeliveryReport.from_payload(["odd"]).status == "delivered"


@respx.mock
def test_transport_errors_are_retried_then_raised():
    route = respx.post(URL).mock(side_effect=httpx.ConnectError)
    with pytest.raises(DeliveryError):
        HttpDeliveryClient(_config(max_attempts=3)).send({})
    assert route.call_count == 3


@respx.mock
def test_transport_error_then_success():
    route = respx.post(URL).mock(
        side_effect=[httpx.ConnectError("down"), httpx.Response(200, json={"status": "ok"})]
    )
    report = HttpDeliveryClient(_config()).send({})
    assert report.status == "delivered"
    assert route.call_count == 2


@respx.mock
def test_http_error_status_is_not_retried():
    route = respx.post(URL).mock(return_value=httpx.Response(500))
    with pytest.raises(DeliveryError):
        HttpDeliveryClient(_config()).send({})
    assert route.call_count == 1


def test_missing_url():
    with pytest.raises(DeliveryError):
        HttpDeliveryClient(_config(url="")).send({})

"""
Payment API Tests

Hold, capture, cancel and refund over HTTP, end to end through both apps.
"""
import pytest

from microservices.payment_service.models import GatewayOperation

from tests.component.mocks import gateway_result

pytestmark = pytest.mark.api


def decide_all(order_client, order: dict) -> None:
    for item in order["items"]:
        response = order_client.post(
            f"/api/v1/orders/{order['order_id']}/items/{item['item_id']}/order-from-supplier",
            json={"supplier_name": "Acme", "actor": "staff_1"},
        )
        assert response.status_code == 200


class TestHoldAndCapture:

    def test_hold_decide_capture(self, order_client, payment_client, new_order, card):
        order = new_order(["200.00"], shipping="10")

        hold = payment_client.post(f"/api/v1/payments/orders/{order['order_id']}/hold", json={"card": card})
        assert hold.status_code == 200
        assert hold.json()["amount"] == "210.00"

        decide_all(order_client, order)
        assert order_client.get(f"/api/v1/orders/{order['order_id']}").json()["payment"]["status"] == "ready_to_charge"

        capture = payment_client.post(f"/api/v1/payments/orders/{order['order_id']}/capture")
        assert capture.status_code == 200
        assert capture.json()["kind"] == "charged"

        again = payment_client.post(f"/api/v1/payments/orders/{order['order_id']}/capture")
        assert again.status_code == 409

    def test_declined_hold_402(self, payment_client, components, new_order, card):
        order = new_order()
        components.gateway.script(GatewayOperation.HOLD, gateway_result(GatewayOperation.HOLD, success=False, code="6"))

        response = payment_client.post(f"/api/v1/payments/orders/{order['order_id']}/hold", json={"card": card})

        assert response.status_code == 402
        assert response.json()["success"] is False

    def test_bad_card_400(self, payment_client, new_order, card):
        order = new_order()
        card["card_number"] = "1234"

        response = payment_client.post(f"/api/v1/payments/orders/{order['order_id']}/hold", json={"card": card})

        assert response.status_code == 400

    def test_hold_unknown_order_404(self, payment_client, card):
        response = payment_client.post("/api/v1/payments/orders/order_missing/hold", json={"card": card})
        assert response.status_code == 404

    def test_charge_run(self, order_client, payment_client, new_order, card):
        order = new_order(["50.00"])
        payment_client.post(f"/api/v1/payments/orders/{order['order_id']}/hold", json={"card": card})
        decide_all(order_client, order)

        response = payment_client.post("/api/v1/payments/charge/run")

        assert response.status_code == 200
        assert response.json()["succeeded"] == 1


class TestCancelAndRefund:

    def test_cancel_hold(self, order_client, payment_client, new_order, card):
        order = new_order(["80.00", "20.00"])
        payment_client.post(f"/api/v1/payments/orders/{order['order_id']}/hold", json={"card": card})

        response = payment_client.post(
            f"/api/v1/payments/orders/{order['order_id']}/cancel",
            json={"reason": "Customer request", "actor": "staff_1"},
        )

        assert response.status_code == 200
        stored = order_client.get(f"/api/v1/orders/{order['order_id']}").json()
        assert stored["payment"]["status"] == "cancelled"
        assert stored["status"] == "cancelled"

    def test_cancel_pending_order_409(self, payment_client, new_order):
        order = new_order()
        response = payment_client.post(
            f"/api/v1/payments/orders/{order['order_id']}/cancel",
            json={"reason": "Customer request", "actor": "staff_1"},
        )
        assert response.status_code == 409

    def test_refund_flow(self, order_client, payment_client, new_order, card):
        order = new_order(["100.00", "40.00"])
        payment_client.post(f"/api/v1/payments/orders/{order['order_id']}/hold", json={"card": card})
        decide_all(order_client, order)
        payment_client.post(f"/api/v1/payments/orders/{order['order_id']}/capture")

        eligibility = payment_client.get(f"/api/v1/payments/orders/{order['order_id']}/refunds/eligibility")
        assert eligibility.json()["can_refund"] is True

        refund = payment_client.post(f"/api/v1/payments/orders/{order['order_id']}/refunds", json={
            "item_ids": [order["items"][1]["item_id"]],
            "reason": "Damaged",
            "actor": "staff_1",
            "card": card,
        })
        assert refund.status_code == 200
        assert refund.json()["payment_status"] == "partial_refund"

        history = payment_client.get(f"/api/v1/payments/orders/{order['order_id']}/refunds").json()
        assert history["total_refunded"] == "40.00"
        assert history["max_refundable"] == "100.00"

    def test_refund_before_charge_400(self, payment_client, new_order, card):
        order = new_order()
        response = payment_client.post(f"/api/v1/payments/orders/{order['order_id']}/refunds", json={
            "reason": "Damaged", "actor": "staff_1", "card": card,
        })
        assert response.status_code == 400

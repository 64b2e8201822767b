# courier.py
"""Steadfast courier API client.

Stateless request/response calls: dispatching an order, tracking and
cancelling consignments, quoting delivery charges. Nothing here touches
stock or order placement.
"""
from decimal import Decimal, ROUND_HALF_UP
import logging

import requests

from errors import CourierError

logger = logging.getLogger(__name__)

STEADFAST_API_URL = "https://portal.steadfast.com.bd/api/v1"
BOOK_WEIGHT_KG = 0.5


def build_consignment(order):
    """Steadfast create_order payload for a placed order."""
    items = order.items
    titles = ", ".join(item.title for item in items)[:100]
    address = f"{order.street}, {order.city}, {order.state or ''} {order.zip_code or ''}".strip()
    quantity = sum(item.qty for item in items)
    return {
        "invoice": order.order_id,
        "recipient_name": order.name,
        "recipient_phone": order.phone,
        "recipient_address": address,
        # Steadfast expects an integer amount
        "cod_amount": int(Decimal(order.total).quantize(Decimal("1"), rounding=ROUND_HALF_UP)),
        "note": f"Book Nook Order - {len(items)} books: {titles}",
        "recipient_city": order.city,
        "recipient_zone": order.state or "",
        "recipient_area": order.city,
        "delivery_type": "regular",
        "item_type": "book",
        "item_quantity": quantity,
        "item_weight": quantity * BOOK_WEIGHT_KG,
        "item_description": "; ".join(
            f"{item.title} by {item.author} (Qty: {item.qty})" for item in items
        )[:200],
    }


class SteadfastClient:
    def __init__(self, api_key, secret_key, base_url=STEADFAST_API_URL, timeout=15, session=None):
        self.api_key = api_key
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config):
        if not config.get("STEADFAST_API_KEY") or not config.get("STEADFAST_SECRET_KEY"):
            raise CourierError("Courier API credentials are not configured.")
        return cls(
            api_key=config["STEADFAST_API_KEY"],
            secret_key=config["STEADFAST_SECRET_KEY"],
            base_url=config.get("STEADFAST_API_URL", STEADFAST_API_URL),
            timeout=config.get("COURIER_TIMEOUT", 15),
        )

    def _send(self, method, path, headers, payload=None):
        url = f"{self.base_url}/{path}"
        try:
            resp = self.session.request(method, url, headers=headers, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error("Steadfast %s %s failed: %s", method, path, exc)
            raise CourierError(f"Courier service unreachable: {exc}") from exc
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"data": data}
        if not resp.ok:
            logger.error("Steadfast %s %s -> HTTP %s: %s", method, path, resp.status_code, data)
            raise CourierError(data.get("message") or f"Courier request failed ({resp.status_code})")
        return data

    def _token(self):
        data = self._send(
            "POST",
            "get_token",
            {"Content-Type": "application/json", "Accept": "application/json"},
            {"api_key": self.api_key, "secret_key": self.secret_key},
        )
        token = data.get("access_token")
        if not token:
            raise CourierError("Failed to get Steadfast access token")
        return token

    def _call(self, method, path, payload=None):
        headers = {"Authorization": f"Bearer {self._token()}", "Accept": "application/json"}
        if payload is not None:
            headers["Content-Type"] = "application/json"
        return self._send(method, path, headers, payload)

    @staticmethod
    def _check_status(data, default_message):
        # The API also reports failures with HTTP 200 and a body status
        if data.get("status") != 200:
            raise CourierError(data.get("message") or default_message)

    def balance(self):
        return self._call("GET", "get_balance")

    def create_order(self, order):
        data = self._call("POST", "create_order", build_consignment(order))
        self._check_status(data, "Steadfast order creation failed")
        consignment = data.get("consignment")
        if not isinstance(consignment, dict) or not consignment.get("consignment_id"):
            logger.error("Steadfast accepted order %s without a consignment: %s", order.order_id, data)
            raise CourierError("Steadfast response did not include a consignment id")
        logger.info("Order %s dispatched as consignment %s", order.order_id, consignment["consignment_id"])
        return {
            "consignment_id": consignment["consignment_id"],
            "tracking_code": consignment.get("tracking_code"),
            "status": consignment.get("status"),
            "message": data.get("message") or "Order successfully submitted to Steadfast Courier",
        }

    def status(self, consignment_id):
        data = self._call("GET", f"status_by_cid/{consignment_id}")
        self._check_status(data, "Failed to get order status")
        return {
            "consignment_id": data.get("consignment_id", consignment_id),
            "status": data.get("delivery_status"),
            "tracking_code": data.get("tracking_code"),
            "current_status": data.get("current_status"),
            "last_update": data.get("updated_at"),
            "delivery_fee": data.get("delivery_fee"),
            "cod_fee": data.get("cod_fee"),
            "total_fee": data.get("total_fee"),
        }

    def bulk_status(self, consignment_ids):
        data = self._call("POST", "bulk_status_by_cid", {"consignment_id": ",".join(map(str, consignment_ids))})
        return data.get("data", [])

    def cancel(self, consignment_id):
        data = self._call("POST", "cancel_order", {"consignment_id": consignment_id})
        return data.get("message")

    def delivery_charge(self, city, cod_amount, weight=BOOK_WEIGHT_KG):
        data = self._call(
            "POST",
            "get_delivery_charge",
            {"recipient_city": city, "cod_amount": cod_amount, "weight": weight},
        )
        return {
            "delivery_fee": data.get("delivery_fee"),
            "cod_fee": data.get("cod_fee"),
            "total_fee": data.get("total_fee"),
        }

"""Tool declarations offered to the model and the name -> handler executor.

Handlers receive already-parsed arguments plus the MerchantContext of the turn.
Domain failures (unknown product, no stock, unknown order) are raised as
ToolExecutionError; the orchestrator turns them into failure tool results so the
model can explain the problem to the customer.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from .catalog import Catalog, CatalogItem
from .errors import ToolExecutionError
from .utils import normalize_phone, normalize_text

logger = logging.getLogger("chatcommerce.tools")

TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": "create_order",
        "description": (
            "Create an order for the customer. When a product has variants (size, colour, ...) "
            "every variant group MUST be filled in selected_variants before calling, e.g. "
            '{"Taille": "Petite", "Couleur": "Bleu"}. Short labels are enough: "Petite" '
            'matches "Petite (50g)".'
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "items": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "product_name": {"type": "string", "description": "Product name without variants"},
                            "quantity": {"type": "integer", "description": "Quantity"},
                            "selected_variants": {
                                "type": "object",
                                "description": 'Chosen variants, e.g. {"Taille": "Petite", "Couleur": "Rouge"}',
                            },
                        },
                        "required": ["product_name", "quantity"],
                    },
                },
                "customer_name": {"type": "string", "description": "Customer full name"},
                "customer_phone": {"type": "string", "description": "Customer phone with country code, e.g. +2250707123456"},
                "delivery_address": {"type": "string", "description": "Full delivery address"},
                "email": {"type": "string", "description": "Email, required for digital products"},
                "payment_method": {"type": "string", "enum": ["online", "cod"], "description": "Payment method"},
                "notes": {"type": "string", "description": "Special instructions"},
            },
            "required": ["items", "customer_name", "customer_phone"],
        },
    },
    {
        "name": "check_payment_status",
        "description": "Check the status of an order.",
        "parameters": {
            "type": "object",
            "properties": {"order_id": {"type": "string", "description": "Order id"}},
            "required": ["order_id"],
        },
    },
    {
        "name": "send_image",
        "description": "Send the picture of a product to the customer.",
        "parameters": {
            "type": "object",
            "properties": {
                "product_name": {"type": "string", "description": "Product name"},
                "selected_variants": {"type": "object", "description": 'Chosen variants, e.g. {"Couleur": "Rouge"}'},
            },
            "required": ["product_name"],
        },
    },
    {
        "name": "create_booking",
        "description": "Create a booking for a service (hotel, restaurant, salon, consulting, rental).",
        "parameters": {
            "type": "object",
            "properties": {
                "booking_type": {"type": "string", "description": "stay, table, slot or rental"},
                "service_name": {"type": "string", "description": "Service name in the catalog"},
                "selected_variant": {"type": "string", "description": "Chosen variant when the service has variants"},
                "customer_phone": {"type": "string", "description": "Customer phone with country code"},
                "customer_name": {"type": "string", "description": "Customer name"},
                "preferred_date": {"type": "string", "description": "Start date (YYYY-MM-DD)"},
                "preferred_time": {"type": "string", "description": "Time (HH:MM) for table/slot"},
                "end_date": {"type": "string", "description": "End date (YYYY-MM-DD) for stay/rental"},
                "party_size": {"type": "number", "description": "Number of people"},
                "selected_supplements": {"type": "object", "description": 'Supplements, e.g. {"Petit déjeuner": true}'},
                "notes": {"type": "string", "description": "Special requests"},
            },
            "required": ["booking_type", "service_name", "customer_phone", "customer_name", "preferred_date"],
        },
    },
    {
        "name": "find_order",
        "description": "Find the latest orders of a customer by phone number.",
        "parameters": {
            "type": "object",
            "properties": {"phone_number": {"type": "string", "description": "Customer phone with country code"}},
            "required": ["phone_number"],
        },
    },
]

STATUS_MESSAGES = {
    "pending": "Waiting for payment.",
    "paid": "Payment confirmed, order in preparation.",
    "pending_delivery": "Out for delivery.",
    "delivered": "Delivered.",
    "cancelled": "Cancelled.",
}


@dataclass(frozen=True)
class MerchantContext:
    """Per-turn merchant facts handed to every tool handler."""
    agent_id: str
    owner_id: str
    catalog: Catalog
    session_id: str = ""


ToolHandler = Callable[[Dict[str, Any], MerchantContext], Awaitable[Dict[str, Any]]]


class ToolExecutor(Protocol):
    async def execute(self, name: str, arguments: Dict[str, Any], context: MerchantContext) -> Dict[str, Any]:
        ...


def failure_result(error: str, **extra: Any) -> Dict[str, Any]:
    return {"success": False, "error": error, **extra}


class ToolRegistry:
    """Dispatch tool calls by name to registered async handlers."""

    def __init__(self) -> None:
        self._handlers: Dict[str, ToolHandler] = {}

    def register(self, name: str, handler: ToolHandler) -> None:
        self._handlers[name] = handler

    def names(self) -> List[str]:
        return list(self._handlers)

    def definitions(self) -> List[Dict[str, Any]]:
        return [definition for definition in TOOL_DEFINITIONS if definition["name"] in self._handlers]

    async def execute(self, name: str, arguments: Dict[str, Any], context: MerchantContext) -> Dict[str, Any]:
        """Purpose: Run the handler registered for a tool name.
        Inputs/Outputs: Inputs are the tool name, parsed arguments and MerchantContext;
            output is the handler's result dict.
        Side Effects / State: Whatever the handler does (orders, bookings).
        Dependencies: Handlers registered via register().
        Failure Modes: Unknown names return a failure result; ToolExecutionError and
            unexpected errors propagate to the orchestrator.
        If Removed: Tool calls proposed by the model are never executed.
        Testing Notes: Unknown tool -> {"success": False, "error": "unknown tool: ..."}.
        """
        # Look up the handler and await it.
        handler = self._handlers.get(name)
        if handler is None:
            logger.warning("tool=%s status=unknown", name)
            return failure_result(f"unknown tool: {name}")
        return await handler(arguments, context)


@dataclass
class OrderRecord:
    order_id: str
    agent_id: str
    owner_id: str
    customer_name: str
    customer_phone: str
    lines: List[Dict[str, Any]]
    total: int
    payment_method: str
    status: str
    delivery_address: str = ""
    notes: str = ""
    created_at: float = field(default_factory=time.time)


class OrderBook:
    """Process-local order and booking storage for the playground surface."""

    def __init__(self) -> None:
        self._orders: Dict[str, OrderRecord] = {}
        self._bookings: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def add_order(self, record: OrderRecord) -> OrderRecord:
        with self._lock:
            self._orders[record.order_id] = record
        return record

    def get_order(self, order_id: str) -> Optional[OrderRecord]:
        with self._lock:
            return self._orders.get(order_id)

    def orders_for_phone(self, agent_id: str, phone: str, limit: int = 3) -> List[OrderRecord]:
        with self._lock:
            matches = [
                order
                for order in self._orders.values()
                if order.agent_id == agent_id and order.customer_phone == phone
            ]
        return sorted(matches, key=lambda order: order.created_at, reverse=True)[:limit]

    def add_booking(self, booking: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self._bookings[booking["booking_id"]] = booking
        return booking


class CommerceTools:
    """Default handlers for the five commerce tools."""

    def __init__(self, orders: OrderBook) -> None:
        self._orders = orders

    def register_all(self, registry: ToolRegistry) -> ToolRegistry:
        registry.register("create_order", self.create_order)
        registry.register("check_payment_status", self.check_payment_status)
        registry.register("send_image", self.send_image)
        registry.register("create_booking", self.create_booking)
        registry.register("find_order", self.find_order)
        return registry

    async def create_order(self, arguments: Dict[str, Any], context: MerchantContext) -> Dict[str, Any]:
        """Purpose: Price each order line from the catalog and record the order.
        Inputs/Outputs: Inputs are create_order arguments and MerchantContext; output has
            order_id, total, per-line summary and a customer-facing message.
        Side Effects / State: Adds an OrderRecord to the OrderBook.
        Dependencies: Uses Catalog.resolve, CatalogItem.unit_price and normalize_phone.
        Failure Modes: Raises ToolExecutionError for unknown products, missing stock,
            unpriced products, a phone without country code or a digital product without email.
        If Removed: Customers cannot place orders through the assistant.
        Testing Notes: 2 x base 15000 + additive 500 -> total 31000.
        """
        # Resolve every line before recording anything.
        items = arguments.get("items") or []
        email = str(arguments.get("email") or "").strip()
        lines: List[Dict[str, Any]] = []
        total = 0
        for item in items:
            if not isinstance(item, dict):
                continue
            product = self._resolve(context.catalog, item.get("product_name"))
            quantity = _quantity(item.get("quantity"))
            if product.product_type == "digital" and not email:
                raise ToolExecutionError(
                    "Email required: this digital product is delivered by email.",
                    context={"hint": "Ask the customer for their email address."},
                )
            if not product.in_stock(quantity):
                available = max(product.stock_quantity or 0, 0)
                raise ToolExecutionError(
                    f'Not enough stock for "{product.name}".',
                    context={"available_stock": available},
                )
            selection = item.get("selected_variants") if isinstance(item.get("selected_variants"), dict) else {}
            unit_price = product.unit_price(selection)
            if unit_price is None:
                raise ToolExecutionError(f'No price configured for "{product.name}".')
            line_total = unit_price * quantity
            total += line_total
            lines.append(
                {
                    "product_name": product.name,
                    "selected_variants": selection,
                    "quantity": quantity,
                    "unit_price": unit_price,
                    "line_total": line_total,
                }
            )

        if not lines:
            raise ToolExecutionError("Order has no valid items.")
        customer_phone = _customer_phone(arguments.get("customer_phone"))
        payment_method = arguments.get("payment_method") if arguments.get("payment_method") in ("online", "cod") else "online"
        notes = str(arguments.get("notes") or "")
        if email:
            notes = f"{notes}\nEmail: {email}".strip()
        record = self._orders.add_order(
            OrderRecord(
                order_id=uuid.uuid4().hex,
                agent_id=context.agent_id,
                owner_id=context.owner_id,
                customer_name=str(arguments.get("customer_name") or "Unknown"),
                customer_phone=customer_phone,
                lines=lines,
                total=total,
                payment_method=payment_method,
                status="pending_delivery" if payment_method == "cod" else "pending",
                delivery_address=str(arguments.get("delivery_address") or ""),
                notes=notes,
            )
        )
        logger.info("agent=%s order=%s lines=%s total=%s", context.agent_id, record.order_id, len(lines), total)
        summary = [
            f"- {line['product_name']} {line['quantity']} x {line['unit_price']} = {line['line_total']} FCFA"
            for line in lines
        ]
        if payment_method == "cod":
            message = f"Order confirmed. Payment of {total} FCFA on delivery."
        else:
            message = f"Order created. Payment of {total} FCFA pending."
        return {
            "success": True,
            "order_id": record.order_id,
            "total": total,
            "payment_method": payment_method,
            "items": "\n".join(summary),
            "message": message,
        }

    async def check_payment_status(self, arguments: Dict[str, Any], context: MerchantContext) -> Dict[str, Any]:
        order_id = str(arguments.get("order_id") or "").strip()
        order = self._orders.get_order(order_id)
        if order is None or order.agent_id != context.agent_id:
            raise ToolExecutionError(f"Order {order_id} not found.")
        status_text = STATUS_MESSAGES.get(order.status, order.status)
        return {
            "success": True,
            "order_id": order.order_id,
            "status": order.status,
            "message": f"Order #{order.order_id[:8]}: {status_text} Total: {order.total} FCFA.",
        }

    async def find_order(self, arguments: Dict[str, Any], context: MerchantContext) -> Dict[str, Any]:
        phone = normalize_phone(arguments.get("phone_number"))
        if not phone:
            raise ToolExecutionError("Invalid phone number.")
        orders = self._orders.orders_for_phone(context.agent_id, phone)
        if not orders:
            return {"success": True, "orders": [], "message": "No order found for this number."}
        return {
            "success": True,
            "orders": [
                {
                    "order_id": order.order_id,
                    "total": order.total,
                    "status": order.status,
                    "items": [f"{line['quantity']}x {line['product_name']}" for line in order.lines],
                }
                for order in orders
            ],
        }

    async def send_image(self, arguments: Dict[str, Any], context: MerchantContext) -> Dict[str, Any]:
        product = self._resolve(context.catalog, arguments.get("product_name"))
        image_url = product.image_url
        variant_label = ""
        selection = arguments.get("selected_variants") if isinstance(arguments.get("selected_variants"), dict) else {}
        for group in product.variants:
            found, value = product.selection_for(group, selection)
            option = group.match(value) if found else None
            if option is not None and option.image_url:
                image_url = option.image_url
                variant_label = option.label
                break
        if not image_url:
            raise ToolExecutionError(f'No picture available for "{product.name}".')
        caption = f"{product.name} ({variant_label})" if variant_label else product.name
        return {
            "success": True,
            "action": "send_image",
            "image_url": image_url,
            "caption": caption,
            "product_name": product.name,
        }

    async def create_booking(self, arguments: Dict[str, Any], context: MerchantContext) -> Dict[str, Any]:
        """Purpose: Book a service, pricing the chosen variant and supplements.
        Inputs/Outputs: Inputs are create_booking arguments and MerchantContext; output is
            the booking summary with its computed price.
        Side Effects / State: Stores the booking in the OrderBook.
        Dependencies: Uses Catalog.resolve and VariantGroup.match.
        Failure Modes: Unknown services and phones without a country code raise
            ToolExecutionError.
        If Removed: Hotels, restaurants and salons cannot take reservations.
        Testing Notes: Supplements flagged true add their price to the booking.
        """
        # Fixed variant replaces the base price; supplements set to true add to it.
        service = self._resolve(context.catalog, arguments.get("service_name"))
        customer_phone = _customer_phone(arguments.get("customer_phone"))
        price = service.base_price or 0
        variant_label = ""
        selected_variant = arguments.get("selected_variant")
        if selected_variant:
            for group in service.variants:
                if group.is_additive:
                    continue
                option = group.match(selected_variant)
                if option is not None:
                    variant_label = option.label
                    if option.price > 0:
                        price = option.price
                    break
        supplements = arguments.get("selected_supplements") if isinstance(arguments.get("selected_supplements"), dict) else {}
        chosen = {normalize_text(str(name)) for name, flag in supplements.items() if flag is True}
        supplement_labels = []
        for group in service.variants:
            if not group.is_additive:
                continue
            for option in group.options:
                if normalize_text(option.label) in chosen:
                    price += option.price
                    supplement_labels.append(option.label)

        booking = self._orders.add_booking(
            {
                "booking_id": uuid.uuid4().hex,
                "agent_id": context.agent_id,
                "booking_type": arguments.get("booking_type") or "slot",
                "service_name": service.name,
                "selected_variant": variant_label or None,
                "selected_supplements": supplement_labels,
                "customer_name": arguments.get("customer_name"),
                "customer_phone": customer_phone,
                "date": arguments.get("preferred_date"),
                "time": arguments.get("preferred_time"),
                "end_date": arguments.get("end_date"),
                "party_size": arguments.get("party_size") or 1,
                "price": price,
                "status": "confirmed",
            }
        )
        logger.info("agent=%s booking=%s service=%s", context.agent_id, booking["booking_id"], service.name)
        message = f"Booking confirmed: {service.name} on {booking['date']}"
        if booking["time"]:
            message += f" at {booking['time']}"
        return {"success": True, **booking, "message": message + "."}

    def _resolve(self, catalog: Catalog, name: Any) -> CatalogItem:
        product = catalog.resolve(name)
        if product is None:
            available = ", ".join(item.name for item in catalog)
            raise ToolExecutionError(
                f'Product "{name}" not found.',
                context={"available": available},
            )
        return product


def build_default_registry(orders: Optional[OrderBook] = None) -> ToolRegistry:
    return CommerceTools(orders or OrderBook()).register_all(ToolRegistry())


def _quantity(value: Any) -> int:
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        return 1
    return quantity if quantity > 0 else 1


def _customer_phone(value: Any) -> str:
    # A missing phone is stored empty; a supplied one must be international.
    if value is None or not str(value).strip():
        return ""
    phone = normalize_phone(value)
    if not phone:
        raise ToolExecutionError(
            "Invalid phone number.",
            context={"hint": "Ask the customer for the number with its country code, e.g. +225..."},
        )
    return phone

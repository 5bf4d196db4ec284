"""Demand forecasting through an external text-generation backend.

The backend is any callable that takes a prompt and returns the model's text
reply. :class:`GeminiBackend` is the production one; tests inject stubs.
A failing backend or an unreadable reply never breaks the caller, it just
yields no insights.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from google import genai
from google.genai import types

from . import core_logic, data_manager, log
from .data_manager import InventoryBatchRow, InvoiceItemRow, InvoiceRow


class ForecastBackend(Protocol):
    def __call__(self, prompt: str) -> str:
        ...


_RESPONSE_SCHEMA = types.Schema(
    type=types.Type.ARRAY,
    items=types.Schema(
        type=types.Type.OBJECT,
        properties={
            "itemName": types.Schema(type=types.Type.STRING),
            "predictedDemand": types.Schema(type=types.Type.NUMBER, description="Next 30 days demand"),
            "suggestedReorder": types.Schema(type=types.Type.NUMBER),
            "estimatedStockoutDate": types.Schema(type=types.Type.STRING),
            "insight": types.Schema(type=types.Type.STRING),
        },
        required=["itemName", "predictedDemand", "suggestedReorder", "estimatedStockoutDate", "insight"],
    ),
)


class GeminiBackend:
    """Forecast backend calling a Gemini model through the ``google-genai`` SDK.

    The client reads its API key from the ``GEMINI_API_KEY`` (or
    ``GOOGLE_API_KEY``) environment variable unless one is passed in.
    """

    def __init__(self, model: str, *, client: Optional[genai.Client] = None) -> None:
        self.model = model
        self._client = client if client is not None else genai.Client()

    def __call__(self, prompt: str) -> str:
        response = self._client.models.generate_content(
            model=self.model,
            contents=prompt,
            config=types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=_RESPONSE_SCHEMA,
            ),
        )
        log.debug("Forecast model '%s' replied", self.model)
        return response.text or ""


def build_backend(settings: data_manager.ConfigSettings) -> ForecastBackend:
    """Create the configured production backend."""

    return GeminiBackend(settings.forecast_model)


@dataclass(frozen=True)
class DemandInsight:
    """Forecast for one item over the next 30 days."""

    item_name: str
    predicted_demand: Decimal
    suggested_reorder: Decimal
    estimated_stockout_date: str
    insight: str


_PROMPT_TEMPLATE = """Analyze this school supply business historical sales data:
{history}

Current Inventory:
{stock}

For these items: {items}

Predict demand for the next 30/60/90 days, suggest reorder quantities, and provide a textual insight.
Return only a JSON array of objects with the keys itemName, predictedDemand (next 30 days demand),
suggestedReorder, estimatedStockoutDate and insight.
"""


def build_forecast_payload(
    invoices: Iterable[InvoiceRow],
    invoice_items: Iterable[InvoiceItemRow],
    inventory: Iterable[InventoryBatchRow],
) -> Dict[str, Any]:
    """Collect the sales history and stock summary the backend is shown.

    Returns:
        dict[str, Any]: ``history`` (one entry per invoice with its date and
            item quantities), ``stock`` (remaining quantity per batch), and
            ``items`` (distinct item names in first-seen order).
    """

    lines_by_invoice: Dict[str, List[Dict[str, Any]]] = {}
    for line in invoice_items:
        lines_by_invoice.setdefault(line.invoice_id, []).append({"name": line.item_name, "qty": float(line.quantity)})

    history = [
        {"date": invoice.invoice_date, "items": lines_by_invoice.get(invoice.invoice_id, [])}
        for invoice in invoices
    ]
    stock = []
    names: List[str] = []
    for batch in inventory:
        stock.append({"name": batch.item_name, "stock": float(batch.quantity_remaining)})
        if batch.item_name not in names:
            names.append(batch.item_name)
    return {"history": history, "stock": stock, "items": names}


def build_prompt(payload: Mapping[str, Any]) -> str:
    return _PROMPT_TEMPLATE.format(
        history=json.dumps(payload["history"]),
        stock=json.dumps(payload["stock"]),
        items=", ".join(payload["items"]),
    )


def parse_insights(reply: str) -> List[DemandInsight]:
    """Decode the backend's JSON reply.

    Raises:
        ValueError: If the reply is not a JSON array of complete insight
            objects.
    """

    data = json.loads(reply or "[]")
    if not isinstance(data, list):
        raise ValueError("Forecast reply must be a JSON array")
    insights = []
    for entry in data:
        try:
            insights.append(
                DemandInsight(
                    item_name=str(entry["itemName"]),
                    predicted_demand=Decimal(str(entry["predictedDemand"])),
                    suggested_reorder=Decimal(str(entry["suggestedReorder"])),
                    estimated_stockout_date=str(entry["estimatedStockoutDate"]),
                    insight=str(entry["insight"]),
                )
            )
        except (KeyError, TypeError, ArithmeticError) as exc:
            raise ValueError(f"Malformed forecast entry: {entry!r}") from exc
    return insights


def request_demand_forecast(
    backend: ForecastBackend,
    invoices: Sequence[InvoiceRow],
    invoice_items: Sequence[InvoiceItemRow],
    inventory: Sequence[InventoryBatchRow],
    item_names: Optional[Sequence[str]] = None,
) -> List[DemandInsight]:
    """Ask ``backend`` for a demand forecast.

    Args:
        backend (ForecastBackend): Callable that turns a prompt into a reply.
        invoices (Sequence[InvoiceRow]): Sales history.
        invoice_items (Sequence[InvoiceItemRow]): Lines of those invoices.
        inventory (Sequence[InventoryBatchRow]): Current stock.
        item_names (Sequence[str] | None): Items to forecast. Defaults to
            every item found in stock.

    Returns:
        list[DemandInsight]: Parsed insights, or an empty list when the
            backend fails or replies with something unusable.
    """

    payload = build_forecast_payload(invoices, invoice_items, inventory)
    if item_names is not None:
        payload["items"] = list(item_names)
    prompt = build_prompt(payload)
    try:
        reply = backend(prompt)
        insights = parse_insights(reply)
    except Exception as exc:
        log.error("Demand forecast failed: %s", exc)
        return []
    log.info("Received %d demand insights", len(insights))
    return insights


def forecast_from_context(
    context: core_logic.RuntimeContext,
    backend: ForecastBackend,
    item_names: Optional[Sequence[str]] = None,
) -> List[DemandInsight]:
    """Run :func:`request_demand_forecast` over the workbook behind ``context``."""

    return request_demand_forecast(
        backend,
        core_logic.list_invoices(context),
        core_logic.list_invoice_items(context),
        core_logic.list_inventory(context),
        item_names,
    )

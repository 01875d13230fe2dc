"""Scripted stand-ins for the Gemini client and its responses."""

from types import SimpleNamespace

from google.genai import errors

PO_SCHEMA = "extract_purchase_order"
LINE_ITEMS_SCHEMA = "extract_po_line_items"


def function_call_response(name, args):
    """Model response carrying a single function call."""
    return SimpleNamespace(function_calls=[SimpleNamespace(name=name, args=args)])


class FakeGenaiClient:
    """Stands in for ``genai.Client``; ``responder(schema_name, contents)`` builds each answer.

    A responder may return an exception instance to have it raised.
    """

    def __init__(self, responder):
        self.responder = responder
        self.calls = []
        self.aio = SimpleNamespace(models=SimpleNamespace(generate_content=self._generate_content))

    async def _generate_content(self, model, contents, config):
        schema_name = config.tools[0].function_declarations[0].name
        self.calls.append({"model": model, "schema": schema_name, "contents": contents, "config": config})
        answer = self.responder(schema_name, contents)
        if isinstance(answer, BaseException):
            raise answer
        return answer

    def schemas_called(self):
        return [call["schema"] for call in self.calls]


def purchase_order_args(po_number="PO-1001", confidence=0.95, line_items=None, **extra):
    args = {
        "confidence": confidence,
        "extractedData": {
            "poNumber": po_number,
            "supplier": {"name": "Acme Supplies", "email": "orders@acme.test"},
            "lineItems": line_items if line_items is not None else [
                {"sku": "A-1", "description": "Widget", "quantity": 2, "unitPrice": 5.0, "total": 10.0},
            ],
            "dates": {"orderDate": "2025-04-05"},
            "totals": {"total": 10.0},
        },
        "qualityIndicators": {"imageClarity": "high", "textLegibility": "high", "documentCompleteness": "complete"},
        "issues": [],
        "suggestions": [],
    }
    args.update(extra)
    return args


def line_items_args(line_items, confidence=0.9):
    return {"confidence": confidence, "lineItems": line_items, "issues": []}


def default_responder(schema_name, contents):
    if schema_name == LINE_ITEMS_SCHEMA:
        return function_call_response(
            schema_name,
            line_items_args([{"sku": "B-2", "description": "Gadget", "quantity": 1, "unitPrice": 3.5}])
        )
    return function_call_response(schema_name, purchase_order_args())


def api_error(code, status):
    """google-genai API error as raised by the async client."""
    return errors.APIError(code, {"error": {"code": code, "message": status.lower(), "status": status}})

"""
Prompts module for purchase-order extraction.
Contains the system instruction, per-call prompts and the function schemas
offered to the Gemini API.
"""

SYSTEM_INSTRUCTION = """You are a data extraction expert specializing in purchase orders.
You receive the text of a purchase order (or an image of one) and return its content
by calling the function you are given. Never answer in prose.

## EXTRACTION RULES:
- Extract the PO number, supplier/vendor information (name, address, email, phone),
  every line item (product code, description, quantity, unit price, line total),
  dates (order date, expected delivery date), totals (subtotal, tax, shipping, total)
  and any special instructions or notes.
- Include every line item without any artificial limit. If 12 items exist, return all 12.
  Do not summarize, group or omit items.
- If a field is missing, set it to null instead of dropping it or guessing.
- Dates in YYYY-MM-DD format when possible. Amounts as plain numbers without currency symbols.

## CONFIDENCE:
- Provide an overall confidence score between 0 and 1 and a score per field.
- Be very conservative with confidence scores. Only give high confidence (>0.9) when
  you are absolutely certain.
- Report image clarity and text legibility as high, medium or low, and document
  completeness as complete, partial or incomplete.
- List anything that prevented a confident extraction under issues, and what would
  help under suggestions."""

DOCUMENT_PROMPT = """Extract the purchase order from the document below.

Document Content:
{text}"""

FIRST_CHUNK_PROMPT = """IMPORTANT: This is a large document that has been split into chunks. This is chunk 1 of {total_chunks}.
Extract as much information as possible from this chunk, but note that some information may be in subsequent chunks.
Focus on identifying the supplier information, the PO header and every line item present in this chunk.

Document Content (Chunk 1/{total_chunks}):
{text}"""

LINE_ITEMS_PROMPT = """Extract ONLY the line items from this portion of a purchase order document.
This is chunk {chunk_number} of {total_chunks} from a larger document.
The first characters may repeat the end of the previous chunk; extract items that are complete in this chunk.
Each line item should have: productCode, description, quantity, unitPrice, total.
If a field is missing, set it to null instead of dropping the item.

Document Content (Chunk {chunk_number}/{total_chunks}):
{text}"""

IMAGE_PROMPT = """Extract the purchase order shown in the attached image.
If parts of the image are unreadable, extract what you can and report the problem under issues."""

CUSTOM_RULES_HEADER = "\n\n## MERCHANT-SPECIFIC RULES:\n"


_LINE_ITEM_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "productCode": {"type": "STRING", "nullable": True, "description": "SKU or product code"},
        "description": {"type": "STRING", "nullable": True},
        "quantity": {"type": "NUMBER", "nullable": True},
        "unitPrice": {"type": "NUMBER", "nullable": True},
        "total": {"type": "NUMBER", "nullable": True},
        "confidence": {"type": "NUMBER", "nullable": True, "description": "Confidence 0-1 for this item"},
    },
}

_QUALITY_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "imageClarity": {"type": "STRING", "enum": ["high", "medium", "low"]},
        "textLegibility": {"type": "STRING", "enum": ["high", "medium", "low"]},
        "documentCompleteness": {"type": "STRING", "enum": ["complete", "partial", "incomplete"]},
    },
}

PURCHASE_ORDER_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "confidence": {"type": "NUMBER", "description": "Overall confidence between 0 and 1"},
        "extractedData": {
            "type": "OBJECT",
            "properties": {
                "poNumber": {"type": "STRING", "nullable": True},
                "supplier": {
                    "type": "OBJECT",
                    "properties": {
                        "name": {"type": "STRING", "nullable": True},
                        "address": {"type": "STRING", "nullable": True},
                        "email": {"type": "STRING", "nullable": True},
                        "phone": {"type": "STRING", "nullable": True},
                    },
                },
                "lineItems": {"type": "ARRAY", "items": _LINE_ITEM_SCHEMA},
                "dates": {
                    "type": "OBJECT",
                    "properties": {
                        "orderDate": {"type": "STRING", "nullable": True},
                        "deliveryDate": {"type": "STRING", "nullable": True},
                    },
                },
                "totals": {
                    "type": "OBJECT",
                    "properties": {
                        "subtotal": {"type": "NUMBER", "nullable": True},
                        "tax": {"type": "NUMBER", "nullable": True},
                        "shipping": {"type": "NUMBER", "nullable": True},
                        "total": {"type": "NUMBER", "nullable": True},
                    },
                },
                "notes": {"type": "STRING", "nullable": True},
            },
            "required": ["lineItems"],
        },
        "fieldConfidences": {
            "type": "OBJECT",
            "properties": {
                "poNumber": {"type": "NUMBER"},
                "supplier": {"type": "NUMBER"},
                "lineItems": {"type": "NUMBER"},
                "dates": {"type": "NUMBER"},
                "totals": {"type": "NUMBER"},
            },
        },
        "qualityIndicators": _QUALITY_SCHEMA,
        "issues": {"type": "ARRAY", "items": {"type": "STRING"}},
        "suggestions": {"type": "ARRAY", "items": {"type": "STRING"}},
    },
    "required": ["extractedData"],
}

LINE_ITEMS_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "confidence": {"type": "NUMBER", "description": "Confidence between 0 and 1 for this chunk"},
        "lineItems": {"type": "ARRAY", "items": _LINE_ITEM_SCHEMA},
        "issues": {"type": "ARRAY", "items": {"type": "STRING"}},
    },
    "required": ["lineItems"],
}

FUNCTION_DESCRIPTIONS = {
    "extract_purchase_order": "Record the structured content of a purchase order document.",
    "extract_po_line_items": "Record the line items found in one portion of a purchase order.",
}


def with_custom_rules(instruction: str, custom_rules: list[str] | None) -> str:
    """Append merchant rules to the system instruction."""
    if not custom_rules:
        return instruction
    rules = "\n".join(f"- {rule}" for rule in custom_rules)
    return instruction + CUSTOM_RULES_HEADER + rules

"""Structured extraction through Gemini function calling.

Every call forces the model to answer with one named function call. Its
arguments are validated into an ``ExtractionResult``; anything unusable becomes
a zero-confidence result carrying an explanatory issue instead of an exception.
"""

import json
import logging
from collections.abc import Mapping
from typing import Any, Dict, List, Optional

from google import genai
from google.genai import errors, types
from pydantic import ValidationError

from ..core.exceptions import (
    ConfigurationMissingError,
    ExtractionError,
    MalformedExtractionError,
    TransientIOError,
)
from ..core.json_utils import try_parse_or_repair_json
from ..core.models import (
    AISettings,
    ConfidenceSource,
    ExtractedData,
    ExtractionRequest,
    ExtractionResult,
    QualityIndicators,
    SchemaName,
)
from ..core.rate_limit import RateLimitedExecutor, RetryError, create_extraction_executor
from .. import prompts
from .chunking import estimate_tokens

logger = logging.getLogger(__name__)

SCHEMAS: Dict[SchemaName, dict] = {
    SchemaName.PURCHASE_ORDER: prompts.PURCHASE_ORDER_SCHEMA,
    SchemaName.LINE_ITEMS: prompts.LINE_ITEMS_SCHEMA,
}

TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}
AUTH_STATUS_CODES = {401, 403}

# Images have no text to weigh; a nominal page-sized weight stands in
IMAGE_TOKEN_WEIGHT = 1000

QUALITY_SCORES = {"high": 1.0, "medium": 0.6, "low": 0.3, "complete": 1.0, "partial": 0.6, "incomplete": 0.3}


def quality_to_score(level: str) -> float:
    return QUALITY_SCORES.get(level, 0.5)


def normalize_confidence(value: Any) -> Optional[float]:
    """Model confidence on a 0-1 scale; 0-100 scores are rescaled, anything else rejected."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    if number > 1.0 and number <= 100.0:
        number = number / 100.0
    if 0.0 <= number <= 1.0:
        return number
    return None


def completeness_score(data: ExtractedData, schema_name: SchemaName) -> float:
    """Heuristic confidence from how much of the expected content is present."""
    items = data.line_items
    if items:
        valid = [i for i in items if i.description and (i.quantity is not None or i.unit_price is not None)]
        items_score = len(valid) / len(items)
    else:
        items_score = 0.0

    if schema_name == SchemaName.LINE_ITEMS:
        return items_score

    po_score = 1.0 if data.po_number else 0.0

    supplier = data.supplier
    if supplier.name:
        supplier_score = 1.0 if (supplier.email or supplier.phone or supplier.address) else 0.7
    else:
        supplier_score = 0.3 if (supplier.email or supplier.phone or supplier.address) else 0.0

    dates = data.dates
    dates_score = 0.0
    if dates.get("order_date") or dates.get("po_date"):
        dates_score += 0.6
    if dates.get("delivery_date") or dates.get("expected_delivery"):
        dates_score += 0.4

    totals = data.totals
    total_value = next(
        (totals.get(k) for k in ("total", "grand_total", "amount") if totals.get(k) is not None),
        None
    )
    totals_score = 1.0 if total_value is not None else 0.0

    return (po_score + supplier_score + items_score + dates_score + totals_score) / 5


def _string_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [str(v) for v in value if v is not None and str(v).strip()]
    return []


def _field_confidences(value: Any) -> Dict[str, float]:
    if not isinstance(value, Mapping):
        return {}
    result = {}
    for key, raw in value.items():
        normalized = normalize_confidence(raw)
        if normalized is not None:
            result[_snake(str(key))] = normalized
    return result


def _snake(key: str) -> str:
    return "".join(f"_{c.lower()}" if c.isupper() else c for c in key).lstrip("_")


def _load_arguments(args: Any, schema_name: str) -> Dict[str, Any]:
    if isinstance(args, Mapping):
        return dict(args)
    if isinstance(args, (str, bytes)):
        text = args.decode("utf-8") if isinstance(args, bytes) else args
        try:
            return try_parse_or_repair_json(text)
        except (json.JSONDecodeError, ValueError) as e:
            raise MalformedExtractionError(schema_name, "arguments are not valid JSON", text, e)
    raise MalformedExtractionError(schema_name, f"arguments have unexpected type {type(args).__name__}")


def _extracted_payload(payload: Dict[str, Any], schema_name: SchemaName) -> Any:
    if schema_name == SchemaName.LINE_ITEMS:
        if "lineItems" not in payload and "line_items" not in payload:
            raise MalformedExtractionError(schema_name.value, "payload has no lineItems")
        return {"lineItems": payload.get("lineItems", payload.get("line_items"))}

    data = payload.get("extractedData", payload.get("extracted_data"))
    if data is None and any(k in payload for k in ("poNumber", "lineItems", "supplier")):
        # Some answers flatten the data into the top level
        data = payload
    if data is None:
        raise MalformedExtractionError(schema_name.value, "payload has no extractedData")
    return data


def parse_response(
    response: Any,
    expected_schema: SchemaName | str,
    chunk_index: int = 0,
    estimated_tokens: int = 0
) -> ExtractionResult:
    """Turn a model response into an ExtractionResult; never raises for bad payloads."""
    schema_name = SchemaName(expected_schema)

    try:
        calls = getattr(response, "function_calls", None) or []
        call = next((c for c in calls if getattr(c, "name", None) == schema_name.value), None)
        if call is None:
            if calls:
                names = ", ".join(str(getattr(c, "name", "?")) for c in calls)
                raise MalformedExtractionError(schema_name.value, f"model called {names} instead")
            raise MalformedExtractionError(schema_name.value, "no function call payload in response")

        payload = _load_arguments(getattr(call, "args", None), schema_name.value)
        raw_data = _extracted_payload(payload, schema_name)

        try:
            data = ExtractedData.model_validate(raw_data)
        except ValidationError as e:
            raise MalformedExtractionError(
                schema_name.value, "payload does not match the schema", str(raw_data), e
            )
    except MalformedExtractionError as e:
        logger.warning(f"[EXTRACT] Chunk {chunk_index + 1}: {e.message}")
        return ExtractionResult.failed(
            schema_name.value,
            e.message,
            chunk_index=chunk_index,
            estimated_tokens=estimated_tokens,
            suggestions=["Re-run extraction or review the document manually"],
        )

    issues = _string_list(payload.get("issues"))
    heuristic = completeness_score(data, schema_name)

    raw_confidence = payload.get("confidence")
    model_confidence = normalize_confidence(raw_confidence)
    if model_confidence is not None:
        confidence, source = model_confidence, ConfidenceSource.MODEL
    else:
        if raw_confidence is not None:
            issues.append(f"Model confidence {raw_confidence!r} is out of range; completeness score used")
        confidence, source = heuristic, ConfidenceSource.HEURISTIC

    quality_raw = payload.get("qualityIndicators", payload.get("quality_indicators"))
    quality = QualityIndicators.model_validate(quality_raw if isinstance(quality_raw, Mapping) else {})

    return ExtractionResult(
        confidence=confidence,
        extracted_data=data,
        field_confidences=_field_confidences(payload.get("fieldConfidences", payload.get("field_confidences"))),
        quality_indicators=quality,
        issues=issues,
        suggestions=_string_list(payload.get("suggestions")),
        chunk_index=chunk_index,
        estimated_tokens=estimated_tokens,
        schema_name=schema_name.value,
        confidence_source=source,
        completeness_score=heuristic,
        metadata={
            "quality_score": round(sum(quality_to_score(level) for level in (
                quality.image_clarity, quality.text_legibility, quality.document_completeness
            )) / 3, 3),
        },
    )


class ExtractionClient:
    """Gemini function-calling client for purchase-order extraction."""

    def __init__(
        self,
        client: "genai.Client",
        model: str = "gemini-2.5-flash",
        executor: Optional[RateLimitedExecutor] = None,
        custom_rules: Optional[List[str]] = None,
        debug_responses: bool = False
    ):
        self.client = client
        self.model = model
        self.executor = executor or create_extraction_executor()
        self.custom_rules = list(custom_rules or [])
        self.system_instruction = prompts.with_custom_rules(prompts.SYSTEM_INSTRUCTION, self.custom_rules)
        self.debug_responses = debug_responses

    def for_merchant(self, ai_settings: AISettings) -> "ExtractionClient":
        """Client sharing this transport and quota with the merchant's model and rules applied."""
        if not ai_settings.extraction_model and not ai_settings.custom_rules:
            return self
        return ExtractionClient(
            self.client,
            model=ai_settings.extraction_model or self.model,
            executor=self.executor,
            custom_rules=[*self.custom_rules, *ai_settings.custom_rules],
            debug_responses=self.debug_responses,
        )

    def build_request(
        self,
        schema_name: SchemaName | str,
        text: str,
        chunk_index: int = 0,
        total_chunks: int = 1
    ) -> ExtractionRequest:
        """Prompt and function parameters for one extraction call."""
        schema_name = SchemaName(schema_name)

        if schema_name == SchemaName.LINE_ITEMS:
            prompt_text = prompts.LINE_ITEMS_PROMPT.format(
                chunk_number=chunk_index + 1, total_chunks=total_chunks, text=text
            )
        elif total_chunks > 1:
            prompt_text = prompts.FIRST_CHUNK_PROMPT.format(total_chunks=total_chunks, text=text)
        else:
            prompt_text = prompts.DOCUMENT_PROMPT.format(text=text)

        return ExtractionRequest(
            schema_name=schema_name,
            parameters=SCHEMAS[schema_name],
            prompt_text=prompt_text,
            chunk_index=chunk_index,
            total_chunks=total_chunks,
        )

    def generation_config(self, request: ExtractionRequest) -> types.GenerateContentConfig:
        """Force exactly one call of the requested function."""
        declaration = types.FunctionDeclaration(
            name=request.schema_name.value,
            description=prompts.FUNCTION_DESCRIPTIONS[request.schema_name.value],
            parameters=request.parameters,
        )
        return types.GenerateContentConfig(
            system_instruction=self.system_instruction,
            temperature=0,
            tools=[types.Tool(function_declarations=[declaration])],
            tool_config=types.ToolConfig(
                function_calling_config=types.FunctionCallingConfig(
                    mode="ANY",
                    allowed_function_names=[request.schema_name.value],
                )
            ),
            automatic_function_calling=types.AutomaticFunctionCallingConfig(disable=True),
        )

    async def extract_document(self, text: str) -> ExtractionResult:
        """Single-pass extraction of a whole document."""
        request = self.build_request(SchemaName.PURCHASE_ORDER, text)
        return await self._call(request, [request.prompt_text], estimate_tokens(text))

    async def extract_chunk(self, chunk_text: str, chunk_index: int, total_chunks: int) -> ExtractionResult:
        """Extract one chunk; only the first chunk asks for the PO header."""
        schema_name = SchemaName.PURCHASE_ORDER if chunk_index == 0 else SchemaName.LINE_ITEMS
        request = self.build_request(schema_name, chunk_text, chunk_index, total_chunks)
        return await self._call(request, [request.prompt_text], estimate_tokens(chunk_text))

    async def extract_image(self, image_bytes: bytes, mime_type: str) -> ExtractionResult:
        """Extract a purchase order from an image."""
        request = self.build_request(SchemaName.PURCHASE_ORDER, "")
        request = request.model_copy(update={"prompt_text": prompts.IMAGE_PROMPT})
        contents = [
            types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
            prompts.IMAGE_PROMPT,
        ]
        return await self._call(request, contents, IMAGE_TOKEN_WEIGHT)

    async def _call(self, request: ExtractionRequest, contents: list, estimated_tokens: int) -> ExtractionResult:
        label = f"{request.schema_name.value} chunk {request.chunk_index + 1}/{request.total_chunks}"
        config = self.generation_config(request)

        async def operation():
            try:
                return await self.client.aio.models.generate_content(
                    model=self.model,
                    contents=contents,
                    config=config
                )
            except errors.APIError as e:
                raise self._classify_api_error(e, request.schema_name.value) from e
            except (ConnectionError, TimeoutError) as e:
                raise TransientIOError("extraction call", "connection failed", e) from e

        logger.info(f"[EXTRACT] {label} ({estimated_tokens} est. tokens, model {self.model})")
        try:
            response = await self.executor.execute(
                operation,
                operation_name=f"[EXTRACT] {label}",
                retry_exceptions=(TransientIOError,)
            )
        except RetryError as e:
            raise TransientIOError(
                "extraction call",
                f"{label} exhausted retries",
                e.last_exception,
                attempts=e.attempts
            ) from e

        if self.debug_responses:
            logger.debug(f"[EXTRACT] {label} raw function calls: {getattr(response, 'function_calls', None)!r}")

        result = parse_response(response, request.schema_name, request.chunk_index, estimated_tokens)
        result.metadata["model"] = self.model
        logger.info(
            f"[EXTRACT] {label} - confidence {result.confidence:.2f} ({result.confidence_source.value}), "
            f"{len(result.extracted_data.line_items)} line items"
        )
        return result

    def _classify_api_error(self, error: errors.APIError, schema_name: str) -> Exception:
        code = getattr(error, "code", None) or 0
        if code in TRANSIENT_STATUS_CODES or code >= 500:
            return TransientIOError("extraction call", f"API returned {code}", error)
        if code in AUTH_STATUS_CODES:
            return ConfigurationMissingError("*", "gemini_api_key", f"API rejected credentials ({code})")
        return ExtractionError(schema_name, f"API returned {code}", self.model, error)

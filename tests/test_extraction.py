"""Tests for response parsing and the function-calling extraction client."""

import json
from types import SimpleNamespace

import pytest

from fakes import (
    LINE_ITEMS_SCHEMA,
    PO_SCHEMA,
    FakeGenaiClient,
    api_error,
    default_responder,
    function_call_response,
    line_items_args,
    purchase_order_args,
)
from po_pipeline.core.exceptions import ConfigurationMissingError, ExtractionError, TransientIOError
from po_pipeline.core.models import AISettings, ConfidenceSource, SchemaName
from po_pipeline.pipeline.extraction import (
    ExtractionClient,
    completeness_score,
    normalize_confidence,
    parse_response,
)


class TestNormalizeConfidence:

    @pytest.mark.parametrize("raw, expected", [
        (0.8, 0.8),
        (1, 1.0),
        (85, 0.85),
        ("0.5", 0.5),
        (0, 0.0),
    ])
    def test_valid_values(self, raw, expected):
        assert normalize_confidence(raw) == pytest.approx(expected)

    @pytest.mark.parametrize("raw", [150, -0.1, "high", None, True, [0.5]])
    def test_invalid_values(self, raw):
        assert normalize_confidence(raw) is None


class TestParseResponse:

    def test_valid_purchase_order(self):
        response = function_call_response(PO_SCHEMA, purchase_order_args())

        result = parse_response(response, SchemaName.PURCHASE_ORDER, chunk_index=0, estimated_tokens=120)

        assert result.confidence == pytest.approx(0.95)
        assert result.confidence_source == ConfidenceSource.MODEL
        assert result.extracted_data.po_number == "PO-1001"
        assert result.extracted_data.supplier.name == "Acme Supplies"
        assert result.extracted_data.line_items[0].unit_price == 5.0
        assert result.extracted_data.dates == {"order_date": "2025-04-05"}
        assert result.estimated_tokens == 120
        assert result.metadata["quality_score"] == 1.0
        assert not result.is_malformed

    def test_missing_function_call_gives_zero_confidence(self):
        result = parse_response(SimpleNamespace(function_calls=None), SchemaName.PURCHASE_ORDER, chunk_index=2)

        assert result.confidence == 0.0
        assert result.confidence_source == ConfidenceSource.NONE
        assert result.chunk_index == 2
        assert result.is_malformed
        assert any("no function call payload" in issue for issue in result.issues)
        assert result.suggestions

    def test_wrong_function_called(self):
        response = function_call_response(LINE_ITEMS_SCHEMA, line_items_args([]))

        result = parse_response(response, SchemaName.PURCHASE_ORDER)

        assert result.confidence == 0.0
        assert any(LINE_ITEMS_SCHEMA in issue for issue in result.issues)

    def test_json_string_arguments_are_parsed(self):
        args = json.dumps(purchase_order_args(po_number="PO-77"))
        result = parse_response(function_call_response(PO_SCHEMA, args), PO_SCHEMA)

        assert result.extracted_data.po_number == "PO-77"
        assert result.confidence == pytest.approx(0.95)

    def test_repairable_json_arguments(self):
        args = '```json\n{"confidence": 0.7, "extractedData": {"poNumber": "PO-9",},}\n```'
        result = parse_response(function_call_response(PO_SCHEMA, args), PO_SCHEMA)

        assert result.extracted_data.po_number == "PO-9"
        assert result.confidence == pytest.approx(0.7)

    def test_unparseable_arguments_are_malformed(self):
        result = parse_response(function_call_response(PO_SCHEMA, "not json at all"), PO_SCHEMA)

        assert result.confidence == 0.0
        assert result.is_malformed

    def test_percentage_confidence_is_rescaled(self):
        result = parse_response(function_call_response(PO_SCHEMA, purchase_order_args(confidence=80)), PO_SCHEMA)
        assert result.confidence == pytest.approx(0.8)

    def test_out_of_range_confidence_uses_heuristic(self):
        result = parse_response(function_call_response(PO_SCHEMA, purchase_order_args(confidence=250)), PO_SCHEMA)

        assert result.confidence_source == ConfidenceSource.HEURISTIC
        assert result.confidence == pytest.approx(result.completeness_score)
        assert any("out of range" in issue for issue in result.issues)

    def test_missing_confidence_uses_heuristic(self):
        args = purchase_order_args()
        del args["confidence"]

        result = parse_response(function_call_response(PO_SCHEMA, args), PO_SCHEMA)

        assert result.confidence_source == ConfidenceSource.HEURISTIC
        assert 0.0 < result.confidence <= 1.0

    def test_flattened_payload_is_accepted(self):
        args = {"confidence": 0.9, "poNumber": "PO-5", "lineItems": []}
        result = parse_response(function_call_response(PO_SCHEMA, args), PO_SCHEMA)

        assert result.extracted_data.po_number == "PO-5"

    def test_line_items_payload(self):
        args = line_items_args([
            {"productCode": "C-3", "description": "Bolt", "quantity": "10", "price": "$0.25"},
        ], confidence=0.88)

        result = parse_response(function_call_response(LINE_ITEMS_SCHEMA, args), LINE_ITEMS_SCHEMA, chunk_index=1)

        item = result.extracted_data.line_items[0]
        assert item.sku == "C-3"
        assert item.quantity == 10.0
        assert item.unit_price == 0.25
        assert result.chunk_index == 1
        assert result.schema_name == LINE_ITEMS_SCHEMA

    def test_line_items_payload_without_items_is_malformed(self):
        result = parse_response(function_call_response(LINE_ITEMS_SCHEMA, {"confidence": 0.9}), LINE_ITEMS_SCHEMA)
        assert result.is_malformed

    def test_field_confidences_are_normalized(self):
        args = purchase_order_args(fieldConfidences={"poNumber": 90, "supplier": 0.6, "bogus": "n/a"})
        result = parse_response(function_call_response(PO_SCHEMA, args), PO_SCHEMA)

        assert result.field_confidences == {"po_number": pytest.approx(0.9), "supplier": pytest.approx(0.6)}


class TestCompletenessScore:

    def test_complete_purchase_order_scores_high(self):
        result = parse_response(function_call_response(PO_SCHEMA, purchase_order_args()), PO_SCHEMA)
        assert completeness_score(result.extracted_data, SchemaName.PURCHASE_ORDER) >= 0.8

    def test_empty_data_scores_zero(self):
        result = parse_response(function_call_response(PO_SCHEMA, {"extractedData": {}}), PO_SCHEMA)
        assert completeness_score(result.extracted_data, SchemaName.PURCHASE_ORDER) == 0.0


class TestExtractionClient:

    @pytest.mark.asyncio
    async def test_first_chunk_uses_purchase_order_schema(self, executor):
        fake = FakeGenaiClient(default_responder)
        client = ExtractionClient(fake, executor=executor)

        first = await client.extract_chunk("chunk one", 0, 3)
        second = await client.extract_chunk("chunk two", 1, 3)

        assert fake.schemas_called() == [PO_SCHEMA, LINE_ITEMS_SCHEMA]
        assert first.extracted_data.po_number == "PO-1001"
        assert second.chunk_index == 1
        assert second.extracted_data.line_items[0].sku == "B-2"

    @pytest.mark.asyncio
    async def test_request_forces_single_function_call(self, executor):
        fake = FakeGenaiClient(default_responder)
        client = ExtractionClient(fake, model="gemini-test", executor=executor)

        await client.extract_document("PO Number: 1")

        config = fake.calls[0]["config"]
        assert fake.calls[0]["model"] == "gemini-test"
        assert config.temperature == 0
        assert config.tool_config.function_calling_config.allowed_function_names == [PO_SCHEMA]
        assert "PO Number: 1" in fake.calls[0]["contents"][0]

    def test_prompts_name_chunk_position(self, executor):
        client = ExtractionClient(FakeGenaiClient(default_responder), executor=executor)

        request = client.build_request(SchemaName.LINE_ITEMS, "rows", chunk_index=2, total_chunks=4)

        assert "3" in request.prompt_text and "4" in request.prompt_text
        assert request.parameters["properties"]

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, executor):
        attempts = []

        def responder(schema_name, contents):
            attempts.append(schema_name)
            if len(attempts) < 3:
                return api_error(503, "UNAVAILABLE")
            return default_responder(schema_name, contents)

        client = ExtractionClient(FakeGenaiClient(responder), executor=executor)
        result = await client.extract_document("PO text")

        assert len(attempts) == 3
        assert result.extracted_data.po_number == "PO-1001"

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_transient_error(self, executor):
        client = ExtractionClient(FakeGenaiClient(lambda s, c: ConnectionError("reset by peer")), executor=executor)

        with pytest.raises(TransientIOError) as exc_info:
            await client.extract_document("PO text")

        assert exc_info.value.attempts == 3
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_auth_failure_is_configuration_missing(self, executor):
        fake = FakeGenaiClient(lambda s, c: api_error(401, "UNAUTHENTICATED"))
        client = ExtractionClient(fake, executor=executor)

        with pytest.raises(ConfigurationMissingError) as exc_info:
            await client.extract_document("PO text")

        assert not exc_info.value.retryable
        assert len(fake.calls) == 1

    @pytest.mark.asyncio
    async def test_bad_request_is_not_retried(self, executor):
        fake = FakeGenaiClient(lambda s, c: api_error(400, "INVALID_ARGUMENT"))
        client = ExtractionClient(fake, executor=executor)

        with pytest.raises(ExtractionError):
            await client.extract_document("PO text")

        assert len(fake.calls) == 1

    @pytest.mark.asyncio
    async def test_malformed_response_does_not_raise(self, executor):
        client = ExtractionClient(
            FakeGenaiClient(lambda s, c: SimpleNamespace(function_calls=[])), executor=executor
        )

        result = await client.extract_chunk("rows", 1, 2)

        assert result.confidence == 0.0
        assert result.chunk_index == 1
        assert result.metadata["model"] == client.model

    @pytest.mark.asyncio
    async def test_image_extraction_sends_bytes(self, executor):
        fake = FakeGenaiClient(default_responder)
        client = ExtractionClient(fake, executor=executor)

        result = await client.extract_image(b"\x89PNG\r\n\x1a\nfake", "image/png")

        assert fake.schemas_called() == [PO_SCHEMA]
        assert result.estimated_tokens == 1000
        assert len(fake.calls[0]["contents"]) == 2

    @pytest.mark.asyncio
    async def test_merchant_overrides(self, executor):
        fake = FakeGenaiClient(default_responder)
        client = ExtractionClient(fake, model="gemini-default", executor=executor, custom_rules=["Base rule"])

        merchant_client = client.for_merchant(AISettings(
            merchant_id="m-1",
            extraction_model="gemini-merchant",
            custom_rules=["Dates are day-first"],
        ))
        await merchant_client.extract_document("PO text")

        assert fake.calls[0]["model"] == "gemini-merchant"
        instruction = merchant_client.system_instruction
        assert "Base rule" in instruction and "Dates are day-first" in instruction
        assert merchant_client.executor is client.executor
        assert client.for_merchant(AISettings(merchant_id="m-2")) is client

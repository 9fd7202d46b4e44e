"""Unit tests for the immutable pipeline data types."""

import dataclasses

import pytest

from vision_bridge.core.exceptions import (
    InvalidImageInputError,
    UnsupportedImageFormatError,
)
from vision_bridge.core.types import (
    BridgeErrorInfo,
    BridgeResponse,
    InlineEncoded,
    ModelSelection,
    NormalizedImage,
    RemoteURL,
    RoutingRequest,
    ToolInvocation,
    parse_image_reference,
)

pytestmark = pytest.mark.unit


class TestParseImageReference:
    def test_data_url_becomes_inline_encoded(self, png_data_url):
        ref = parse_image_reference(png_data_url)

        assert isinstance(ref, InlineEncoded)
        assert ref.declared_format == "png"
        assert ref.encoded == png_data_url.split(",", 1)[1].encode("ascii")

    def test_declared_format_is_case_insensitive(self):
        ref = parse_image_reference("data:image/JPEG;base64,/9j/4AAQ")

        assert isinstance(ref, InlineEncoded)
        assert ref.declared_format == "jpeg"

    def test_plain_url_becomes_remote_reference(self):
        ref = parse_image_reference("  https://example.com/cat.png ")

        assert ref == RemoteURL("https://example.com/cat.png")

    def test_unsupported_declared_format_is_rejected(self):
        with pytest.raises(UnsupportedImageFormatError):
            parse_image_reference("data:image/bmp;base64,Qk0=")

    @pytest.mark.parametrize(
        "value",
        [
            "",
            "   ",
            "data:text/plain;base64,aGVsbG8=",
            "data:image/png;base64,",
            "data:image/png;base64,not*base64!",
        ],
    )
    def test_malformed_references_are_input_errors(self, value):
        with pytest.raises(InvalidImageInputError):
            parse_image_reference(value)


class TestImmutability:
    def test_tool_invocation_arguments_are_read_only(self):
        invocation = ToolInvocation("analyze_image", {"image_url": "x"})

        with pytest.raises(TypeError):
            invocation.arguments["image_url"] = "y"  # type: ignore[index]

    def test_tool_invocation_requires_name(self):
        with pytest.raises(TypeError, match="tool_name"):
            ToolInvocation("")

    def test_response_fields_cannot_be_reassigned(self):
        response = BridgeResponse(text="ok", confidence=0.9)

        with pytest.raises(dataclasses.FrozenInstanceError):
            response.text = "changed"  # type: ignore[misc]


class TestValidation:
    @pytest.mark.parametrize("confidence", [-0.1, 1.01])
    def test_response_confidence_must_be_a_probability(self, confidence):
        with pytest.raises(ValueError, match="confidence"):
            BridgeResponse(text="x", confidence=confidence)

    def test_response_tokens_cannot_be_negative(self):
        with pytest.raises(ValueError, match="tokens_used"):
            BridgeResponse(text="x", confidence=0.5, tokens_used=-1)

    def test_selection_confidence_must_be_a_probability(self):
        with pytest.raises(ValueError, match="confidence"):
            ModelSelection(model_id="m", confidence=1.5, reason="")

    def test_routing_max_tokens_must_be_positive(self):
        with pytest.raises(ValueError, match="max_tokens"):
            RoutingRequest(max_tokens=0)

    def test_inline_encoded_rejects_unknown_format(self):
        with pytest.raises(UnsupportedImageFormatError):
            InlineEncoded(encoded=b"AAAA", declared_format="tiff")

    def test_remote_url_rejects_blank(self):
        with pytest.raises(InvalidImageInputError):
            RemoteURL(" ")


def test_normalized_image_builds_data_uri():
    image = NormalizedImage(
        encoded="QUJD", format="jpg", byte_size=3, original_size=3
    )

    assert image.mime_type == "image/jpeg"
    assert image.provider_uri == "data:image/jpeg;base64,QUJD"


def test_error_response_is_flagged():
    response = BridgeResponse(
        text="failed",
        confidence=0.0,
        error=BridgeErrorInfo(code="timeout", message="late", category="transient"),
    )

    assert response.is_error
    assert not BridgeResponse(text="ok", confidence=1.0).is_error

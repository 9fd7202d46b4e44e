"""Tool catalog, argument validation and request derivation."""

import pytest

from vision_bridge.core.exceptions import ErrorCategory, ToolArgumentError
from vision_bridge.core.types import ToolInvocation, ToolKind
from vision_bridge.tools import (
    build_analysis_prompt,
    build_description_prompt,
    build_ocr_prompt,
    build_tool_request,
    list_tools,
    parse_arguments,
    resolve_tool_kind,
)

pytestmark = pytest.mark.unit

PRIMARY = "google/gemini-2.0-flash-001"
IMAGE = "https://img.test/cat.png"


def _request(tool: str, **arguments):
    return build_tool_request(
        ToolInvocation(tool, arguments),
        primary_model=PRIMARY,
        default_max_tokens=1000,
        default_temperature=0.7,
    )


class TestCatalog:
    def test_lists_three_tools_with_schemas(self):
        tools = {t["name"]: t for t in list_tools()}

        assert set(tools) == {
            "analyze_image",
            "describe_image",
            "extract_text_from_image",
        }
        analyze = tools["analyze_image"]["inputSchema"]
        assert set(analyze["required"]) == {"image_url", "prompt"}
        assert tools["describe_image"]["inputSchema"]["required"] == ["image_url"]
        assert "language" in tools["extract_text_from_image"]["inputSchema"]["properties"]

    def test_unknown_tool(self):
        with pytest.raises(ToolArgumentError, match="Unknown tool: crop_image"):
            resolve_tool_kind("crop_image")

    def test_generic_kind_is_not_a_tool(self):
        with pytest.raises(ToolArgumentError):
            resolve_tool_kind(ToolKind.GENERIC.value)


class TestArgumentValidation:
    def test_missing_required_field_names_it(self):
        with pytest.raises(ToolArgumentError) as exc_info:
            parse_arguments(ToolKind.ANALYZE, {"image_url": IMAGE})

        err = exc_info.value
        assert err.field_name == "prompt"
        assert err.category is ErrorCategory.INPUT
        assert err.code == "invalid_arguments"
        assert "analyze_image" in str(err)

    @pytest.mark.parametrize(
        "arguments",
        [
            {"image_url": IMAGE, "prompt": "x", "temperature": 2.5},
            {"image_url": IMAGE, "prompt": "x", "max_tokens": 0},
            {"image_url": IMAGE, "prompt": "x", "detail_level": "extreme"},
            {"image_url": "   ", "prompt": "x"},
            {"image_url": IMAGE, "prompt": ""},
        ],
    )
    def test_out_of_range_values_are_rejected(self, arguments):
        with pytest.raises(ToolArgumentError):
            parse_arguments(ToolKind.ANALYZE, arguments)

    def test_non_mapping_arguments(self):
        with pytest.raises(ToolArgumentError, match="expected an object"):
            parse_arguments(ToolKind.DESCRIBE, 42)

    def test_unknown_arguments_are_ignored(self):
        args = parse_arguments(
            ToolKind.EXTRACT_TEXT, {"image_url": IMAGE, "include_confidence": True}
        )

        assert args.language == "en"


class TestBuildToolRequest:
    def test_analyze_uses_caller_parameters(self):
        request = _request(
            "analyze_image",
            image_url=IMAGE,
            prompt="What color is it?",
            model="openai/gpt-4o",
            max_tokens=300,
            temperature=0.0,
            detail_level="low",
        )

        assert request.tool_kind is ToolKind.ANALYZE
        assert request.routing.preferred_model == "openai/gpt-4o"
        assert request.routing.has_image
        assert request.max_tokens == 300
        assert request.routing.max_tokens == 300
        assert request.temperature == 0.0
        assert "What color is it?" in request.prompt
        assert "brief, high-level" in request.prompt

    def test_analyze_defaults(self):
        request = _request("analyze_image", image_url=IMAGE, prompt="p", model="  ")

        assert request.routing.preferred_model is None
        assert request.max_tokens == 1000
        assert request.temperature == 0.7
        assert request.detail_level is None

    def test_describe_high_detail_requires_quality(self):
        request = _request("describe_image", image_url=IMAGE, detail_level="high")

        assert request.routing.requires_high_quality
        assert request.detail_level == "high"
        assert "comprehensive detail" in request.prompt

    def test_describe_defaults(self):
        request = _request("describe_image", image_url=IMAGE)

        assert not request.routing.requires_high_quality
        assert request.detail_level == "medium"
        assert request.add_analysis_prefix

    def test_extract_text_is_deterministic_and_unframed(self):
        request = _request(
            "extract_text_from_image",
            image_url=IMAGE,
            language="fr",
            preserve_formatting=True,
        )

        assert request.routing.preferred_model == PRIMARY
        assert request.temperature == 0.1
        assert not request.add_analysis_prefix
        assert request.preserve_formatting
        assert request.language == "fr"
        assert "(the text appears to be in fr)" in request.prompt

    def test_image_url_is_stripped(self):
        request = _request("describe_image", image_url=f"  {IMAGE}  ")

        assert request.image_url == IMAGE


class TestPrompts:
    @pytest.mark.parametrize(
        ("level", "fragment"),
        [
            ("low", "brief, high-level"),
            ("medium", "balanced, detailed"),
            ("high", "comprehensive, detailed"),
        ],
    )
    def test_analysis_detail_levels(self, level, fragment):
        prompt = build_analysis_prompt("Count the cats.", level)

        assert prompt.startswith("Please analyze the following image in detail. Count the cats.")
        assert fragment in prompt

    def test_analysis_without_detail_level(self):
        prompt = build_analysis_prompt("Count the cats.")

        assert "balanced" not in prompt
        assert prompt.endswith("notable features.")

    def test_description_elements(self):
        prompt = build_description_prompt(
            "low", include_objects=True, include_colors=False, include_text=True
        )

        assert prompt == (
            "Please describe this image in a brief overview, including objects and "
            "subjects, any visible text. Be objective and descriptive."
        )

    def test_description_without_elements(self):
        prompt = build_description_prompt(
            include_objects=False, include_colors=False, include_text=False
        )

        assert prompt == "Please describe this image in detail. Be objective and descriptive."

    def test_ocr_prompt(self):
        assert build_ocr_prompt() == (
            "Please extract all text from this image. Extract the text content while "
            "maintaining readability. If no text is visible, please indicate that clearly."
        )

"""Tests for payload extraction and row normalization."""

import json

import pytest

from notebook_chat.core import EMPTY_CONTENT, Citation, Segment, StructuredContent
from notebook_chat.errors import MalformedPayloadError
from notebook_chat.normalizer import (
    SourceInfo,
    SourceLookup,
    extract_ai_response,
    is_empty_payload,
    is_sentinel,
    normalize_content,
    transform_row,
)


@pytest.fixture
def lookup():
    return SourceLookup({"s1": SourceInfo(title="Geo.pdf", type="pdf")})


class TestOutputNormalization:

    def test_cited_output_item(self, lookup):
        payload = {
            "output": [{
                "text": "Paris is the capital.",
                "citations": [{"chunk_index": 0, "chunk_source_id": "s1", "chunk_lines_from": 1, "chunk_lines_to": 3}],
            }]
        }
        extracted = extract_ai_response(payload)
        content = normalize_content(extracted["content"], lookup)

        assert isinstance(content, StructuredContent)
        assert content.segments == [Segment(text="Paris is the capital.", citation_id=1)]
        assert content.citations == [Citation(
            citation_id=1,
            source_id="s1",
            source_title="Geo.pdf",
            source_type="pdf",
            chunk_index=0,
            chunk_lines_from=1,
            chunk_lines_to=3,
            excerpt="Lines 1-3",
        )]

    def test_citation_numbers_skip_uncited_items(self, lookup):
        content = normalize_content({"output": [
            {"text": "A", "citations": [{"chunk_source_id": "s1", "chunk_lines_from": 1, "chunk_lines_to": 2}]},
            {"text": "B"},
            {"text": "C", "citations": [
                {"chunk_source_id": "s1", "chunk_lines_from": 5, "chunk_lines_to": 6},
                {"chunk_source_id": "missing", "chunk_lines_from": 7, "chunk_lines_to": 9},
            ]},
        ]}, lookup)

        assert [s.citation_id for s in content.segments] == [1, None, 2]
        assert [c.citation_id for c in content.citations] == [1, 2, 2]
        unresolved = content.citations[2]
        assert unresolved.source_title == "Unknown Source"
        assert unresolved.source_type == "pdf"
        assert content.dangling_refs() == []

    def test_json_encoded_output_string(self, lookup):
        raw = json.dumps({"output": [{"text": "Hello"}]})
        content = normalize_content(raw, lookup)
        assert content == StructuredContent(segments=[Segment(text="Hello")])

    def test_invalid_json_string_is_plain_text(self, lookup):
        assert normalize_content('{"output": [', lookup) == '{"output": ['

    def test_json_without_known_structure_stays_raw(self, lookup):
        assert normalize_content('{"foo": 1}', lookup) == '{"foo": 1}'

    def test_canonical_content_is_kept(self, lookup):
        canonical = {
            "segments": [{"text": "See", "citation_id": 1}],
            "citations": [{"citation_id": 1, "source_id": "s1", "source_title": "Geo.pdf", "source_type": "pdf"}],
        }
        content = normalize_content(canonical, lookup)
        assert content.segments[0].citation_id == 1
        assert content.citations[0].source_title == "Geo.pdf"

    def test_canonical_content_with_dangling_ref_is_rejected(self, lookup):
        with pytest.raises(MalformedPayloadError):
            normalize_content({"segments": [{"text": "x", "citation_id": 7}], "citations": []}, lookup)

    def test_none_becomes_placeholder_text(self, lookup):
        assert normalize_content(None, lookup) == EMPTY_CONTENT


class TestExtractionPrecedence:

    def test_typed_ai_message_wins(self):
        payload = {"message": {"type": "ai", "content": "typed"}, "output": [{"text": "other"}], "text": "scalar"}
        assert extract_ai_response(payload)["content"] == "typed"

    def test_output_before_scalar_fields(self):
        payload = {"output": [{"text": "structured"}], "text": "scalar"}
        assert extract_ai_response(payload)["content"] == {"output": [{"text": "structured"}]}

    @pytest.mark.parametrize("key", ["text", "content", "response", "answer"])
    def test_scalar_fields(self, key):
        assert extract_ai_response({key: "value"}) == {"type": "ai", "content": "value"}

    def test_scalar_field_order(self):
        assert extract_ai_response({"answer": "a", "response": "r"})["content"] == "r"

    def test_array_with_output(self):
        payload = [{"output": [{"text": "first"}]}, {"output": [{"text": "second"}]}]
        assert extract_ai_response(payload)["content"] == {"output": [{"text": "first"}]}

    def test_array_of_strings(self):
        assert extract_ai_response(["hello", "ignored"])["content"] == "hello"

    def test_array_of_cited_items_keeps_citations(self, lookup):
        payload = [{"text": "A", "citations": [{"chunk_source_id": "s1", "chunk_lines_from": 1, "chunk_lines_to": 1}]}]
        content = normalize_content(extract_ai_response(payload)["content"], lookup)
        assert content.citations[0].source_title == "Geo.pdf"

    def test_raw_string(self):
        assert extract_ai_response("plain answer") == {"type": "ai", "content": "plain answer"}

    def test_message_string(self):
        assert extract_ai_response({"message": "from message"})["content"] == "from message"

    def test_unrecognized_object_raises(self):
        with pytest.raises(MalformedPayloadError):
            extract_ai_response({"status": "ok"})


class TestSentinels:

    @pytest.mark.parametrize("text", [
        "Workflow was started",
        "workflow was started",
        "WORKFLOW WAS STARTED",
        "Note: Workflow was started at 10:00",
    ])
    def test_detected_case_insensitive(self, text):
        assert is_sentinel(text)

    def test_structured_content_checked(self):
        content = StructuredContent(segments=[Segment(text="Workflow was started")])
        assert is_sentinel(content)

    def test_normal_text(self):
        assert not is_sentinel("The workflow has five steps.")
        assert not is_sentinel(None)


class TestTransformRow:

    def test_ai_row_with_encoded_output(self, lookup):
        row = {"id": 7, "session_id": "nb_u", "message": {
            "type": "ai",
            "content": json.dumps({"output": [{"text": "Hi", "citations": [{"chunk_source_id": "s1", "chunk_lines_from": 2, "chunk_lines_to": 4}]}]}),
            "response_metadata": {"model": "x"},
        }}
        message = transform_row(row, lookup)
        assert message.id == 7
        assert message.role == "ai"
        assert message.session_id == "nb_u"
        assert message.content.citations[0].excerpt == "Lines 2-4"
        assert message.response_metadata == {"model": "x"}

    def test_human_row(self, lookup):
        row = {"id": 1, "session_id": "nb", "message": {"type": "human", "content": "hello"}}
        message = transform_row(row, lookup)
        assert message.role == "human"
        assert message.content == "hello"

    def test_empty_human_content(self, lookup):
        row = {"id": 1, "session_id": "nb", "message": {"type": "human", "content": ""}}
        assert transform_row(row, lookup).content == EMPTY_CONTENT

    def test_string_message_is_human(self, lookup):
        message = transform_row({"id": 2, "session_id": "nb", "message": "raw"}, lookup)
        assert message.role == "human"
        assert message.content == "raw"

    def test_missing_message(self, lookup):
        message = transform_row({"id": 3, "session_id": "nb", "message": None}, lookup)
        assert message.content == EMPTY_CONTENT

    def test_unknown_structure_raises(self, lookup):
        with pytest.raises(MalformedPayloadError):
            transform_row({"id": 4, "session_id": "nb", "message": {"foo": "bar"}}, lookup)

    def test_row_without_id_raises(self, lookup):
        with pytest.raises(MalformedPayloadError):
            transform_row({"session_id": "nb", "message": "hi"}, lookup)


class TestHelpers:

    def test_source_lookup_from_rows(self):
        lookup = SourceLookup.from_rows([
            {"id": "s1", "title": "Geo.pdf", "type": "pdf"},
            {"id": "s2", "title": None, "type": None},
            {"title": "no id"},
        ])
        assert len(lookup) == 2
        assert lookup.resolve("s1") == SourceInfo("Geo.pdf", "pdf")
        assert lookup.resolve("s2") == SourceInfo("Unknown Source", "pdf")
        assert lookup.resolve("nope") is None

    @pytest.mark.parametrize("payload,expected", [
        (None, True), ("", True), ({}, True), ([], True),
        ("x", False), ({"a": 1}, False), (0, False),
    ])
    def test_is_empty_payload(self, payload, expected):
        assert is_empty_payload(payload) is expected

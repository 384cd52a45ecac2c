"""Tests for the escape-recovery strategy chain and conversion results."""

import json

import pytest

import divi_converter
from divi_converter import (
    NO_MARKERS_FOUND,
    NO_VALID_PAYLOADS,
    Conversion,
    ConversionFailure,
    classify_failure,
    convert,
    json_wrap_unescape,
    strategy_stripcslashes,
    strategy_whole_string,
    strip_c_slashes,
)


def attempt_log(result):
    return [(a.order, a.name, a.outcome) for a in result.diagnostics.attempts]


class TestStrategies:

    def test_whole_string_only_accepts_json_strings(self):
        assert strategy_whole_string('"a\\nb"') == "a\nb"
        assert strategy_whole_string('{"a": 1}') is None
        assert strategy_whole_string("<!-- not json -->") is None

    def test_json_wrap_requires_escape_hints(self):
        assert json_wrap_unescape('plain "quoted" text') is None

    def test_json_wrap_unescapes(self):
        assert json_wrap_unescape(r'say \"hi\"\tnow') == 'say "hi"\tnow'

    def test_json_wrap_keeps_bare_quotes_and_lone_backslashes(self):
        assert json_wrap_unescape('a "b" \\q \\n') == 'a "b" \\q \n'

    def test_json_wrap_keeps_literal_newlines(self):
        assert json_wrap_unescape('one\ntwo \\"x\\"') == 'one\ntwo "x"'

    def test_strip_c_slashes(self):
        assert strip_c_slashes(r"a\tb\x41\101\\c\'") == "a\tbAA\\c'"

    def test_stripcslashes_skips_unchanged_text(self):
        assert strategy_stripcslashes("nothing to strip") is None


class TestConvert:

    def test_raw_success_runs_only_first_strategy(self, sample_text):
        result = convert(sample_text)
        assert isinstance(result, Conversion)
        assert result.strategy == "raw"
        assert attempt_log(result) == [(1, "raw", "ok")]

    def test_later_strategies_never_called_after_raw_success(self, sample_text, monkeypatch):
        def explode(text):
            raise AssertionError("should not run")

        monkeypatch.setattr(
            divi_converter,
            "STRATEGIES",
            (divi_converter.STRATEGIES[0], ("explode", explode)),
        )
        assert convert(sample_text).strategy == "raw"

    def test_repeated_calls_are_identical(self, sample_text):
        first = convert(sample_text)
        second = convert(sample_text)
        assert first == second
        assert first.to_json() == second.to_json()
        assert first.rendered_css == second.rendered_css

    def test_escaped_input_recovers_via_json_wrapper(self, sample_text):
        escaped = json.dumps(sample_text)[1:-1]
        result = convert(escaped)
        expected = convert(sample_text)
        assert result.strategy == "unescaped_with_json_wrapper"
        assert attempt_log(result) == [
            (1, "raw", "no_valid_payloads"),
            (2, "decoded_entire_file_as_string", "skipped"),
            (3, "unescaped_with_json_wrapper", "ok"),
        ]
        assert result.blocks == expected.blocks
        assert result.style == expected.style

    def test_quoted_file_recovers_via_whole_string(self, sample_text):
        result = convert(json.dumps(sample_text))
        assert result.strategy == "decoded_entire_file_as_string"
        assert result.to_dict() == convert(sample_text).to_dict()

    def test_slash_escaped_input_recovers_via_stripcslashes(self):
        result = convert("<!-- wp:divi/blurb {\"title\":\"It\\'s\"} -->")
        assert result.strategy == "stripcslashes_fallback"
        assert result.to_dict() == {"blocks": {"divi_blurb": {"title": "It's"}}, "style": {}}

    def test_malformed_payload_is_ignored(self):
        text = (
            '<!-- wp:divi/text {"content":"ok"} /-->\n'
            '<!-- wp:divi/text {"content":"trunc","x":{"y":1} /-->'
        )
        result = convert(text)
        assert result.to_dict()["blocks"] == {"divi_text": [{"content": "ok"}]}
        assert result.diagnostics.ignored == 1
        assert result.diagnostics.counts == {"divi_text": 1}
        assert result.diagnostics.attempts[0].markers == 2

    def test_truncated_first_marker_does_not_swallow_the_next(self):
        text = '<!-- wp:divi/text {"content":"trunc" /-->\n<!-- wp:divi/text {"content":"ok"} /-->'
        result = convert(text)
        assert isinstance(result, Conversion)
        assert result.strategy == "raw"
        assert result.to_dict()["blocks"] == {"divi_text": [{"content": "ok"}]}
        assert result.diagnostics.ignored == 1
        assert result.diagnostics.attempts[0].markers == 2

    def test_example_from_docs(self, bare_config):
        text = '<!-- wp:divi/foo {"a":1,"style":{"desktop":{".x":"color:red;;"}}} -->'
        result = convert(text, bare_config)
        assert result.to_dict() == {
            "blocks": {"foo": {"a": 1}},
            "style": {"foo": {"desktop": {".x": "color:red;;"}}},
        }
        assert ".foo .x { color: red; }" in result.rendered_css

    def test_custom_style_key(self):
        config = divi_converter.ConverterConfig(style_key="css")
        result = convert('<!-- wp:divi/row {"css":{"desktop":{"a":"b:c"}},"style":1} -->', config)
        assert result.to_dict() == {
            "blocks": {"divi_row": {"style": 1}},
            "style": {"divi_row": {"desktop": {"a": "b:c"}}},
        }

    def test_to_json_is_indented(self, sample_text):
        body = convert(sample_text).to_json()
        assert body.startswith('{\n    "blocks": {')
        assert json.loads(body)["blocks"]["divi_text"] == [{"content": "One"}, {"content": "Two"}]


class TestConversionFailure:

    def test_no_markers(self):
        result = convert("hello world")
        assert isinstance(result, ConversionFailure)
        assert result.reason == NO_MARKERS_FOUND
        assert result.attempts == ["raw"]

    def test_attempts_list_every_strategy_tried(self):
        result = convert(r"line\nline")
        assert result.reason == NO_MARKERS_FOUND
        assert result.attempts == ["raw", "unescaped_with_json_wrapper", "stripcslashes_fallback"]
        assert [a.outcome for a in result.diagnostics.attempts] == [
            "no_markers",
            "skipped",
            "no_markers",
            "no_markers",
        ]

    def test_no_valid_payloads(self):
        result = convert("<!-- wp:divi/text {not json} -->")
        assert result.reason == NO_VALID_PAYLOADS
        assert result.diagnostics.attempts[0].ignored == 1

    @pytest.mark.parametrize("reason", [NO_MARKERS_FOUND, NO_VALID_PAYLOADS])
    def test_classify_failure(self, reason):
        failure = ConversionFailure(reason=reason, attempts=["raw"], diagnostics=divi_converter.Diagnostics())
        summary, hints = classify_failure(failure)
        assert summary == "No Divi blocks found or JSON could not be parsed."
        assert hints[-1] == "Strategies tried: raw."

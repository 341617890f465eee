"""Tests for test output parser."""

import pytest
from epicrun.lib.test_parser import (
    count_passing_tests,
    parse_test_output,
    ParsedTestOutput,
    FailureInfo,
)


class TestCountPassingTests:
    """Tests for passing-test counts across runners."""

    def test_tests_summary_line(self):
        assert count_passing_tests("Tests: 5 passed") == 5

    def test_jest_summary(self):
        output = "Test Suites: 1 failed, 3 passed, 4 total\nTests:       2 failed, 17 passed, 19 total\n"
        assert count_passing_tests(output) == 17

    def test_mocha_summary(self):
        assert count_passing_tests("\n  12 passing (30ms)\n  1 failing\n") == 12

    def test_pytest_summary(self):
        assert count_passing_tests("===== 1 failed, 42 passed in 1.20s =====") == 42

    def test_cargo_summary(self):
        assert count_passing_tests("test result: ok. 8 passed; 0 failed; 0 ignored") == 8

    def test_last_summary_wins(self):
        output = "Tests: 3 passed, 3 total\n...\nTests: 9 passed, 9 total\n"
        assert count_passing_tests(output) == 9

    def test_unrecognised(self):
        assert count_passing_tests("nothing to see") is None
        assert count_passing_tests("") is None
        assert count_passing_tests(None) is None


class TestPytestParser:
    """Tests for pytest output parsing."""

    def test_parses_failed_lines(self):
        stdout = """
tests/test_auth.py:42: AssertionError
=========================== short test summary info ============================
FAILED tests/test_auth.py::test_login - AssertionError: expected 200
FAILED tests/test_api.py::test_list
========================= 2 failed, 10 passed in 0.52s =========================
"""
        result = parse_test_output(stdout, "")
        assert len(result.failures) == 2
        assert result.failures[0].name == "test_login"
        assert result.failures[0].file == "tests/test_auth.py"
        assert result.failures[0].line == 42
        assert "expected 200" in result.failures[0].message
        assert result.failures[1].line is None
        assert result.passed == 10
        assert result.summary == "2 test(s) failed"


class TestJsParser:
    """Tests for jest and mocha failure headers."""

    def test_jest_failures(self):
        stdout = """
  ● Auth › rejects expired token

    expect(received).toBe(expected)

  ● Console

Tests:       1 failed, 4 passed, 5 total
"""
        result = parse_test_output(stdout)
        assert [f.name for f in result.failures] == ["Auth › rejects expired token"]
        assert result.passed == 4

    def test_mocha_failures(self):
        stdout = """
  3 passing (20ms)
  1 failing

  1) Users API
       returns 404:
"""
        result = parse_test_output(stdout)
        assert len(result.failures) == 1
        assert result.failures[0].name == "Users API"


class TestFallback:
    """Unrecognised output falls back to raw text."""

    def test_no_failures_with_passes(self):
        result = parse_test_output("5 passed in 0.1s")
        assert result.is_empty()
        assert result.passed == 5
        assert result.summary == "No failures recognised"

    def test_unparsed_output_truncated(self):
        result = parse_test_output("x" * 5000)
        assert result.summary == "Unparsed test output"
        assert result.raw_output.startswith("...(truncated)")
        assert len(result.raw_output) < 2100


class TestDataclasses:
    """Tests for dataclass defaults."""

    def test_failure_info_defaults(self):
        info = FailureInfo(name="test_x")
        assert info.file is None
        assert info.line is None
        assert info.message == ""

    def test_parsed_output_is_empty(self):
        assert ParsedTestOutput().is_empty()

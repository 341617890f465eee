"""Tests for the prompts module."""

import pytest

from epicrun.lib.prompts import (
    PROMPTS_DIR,
    Priority,
    PromptError,
    PromptFragment,
    assemble_prompt,
    build_section,
    clear_cache,
    load_prompt,
    render_prompt,
    truncate_fragment,
)


class TestLoadPrompt:
    """Tests for load_prompt function."""

    def test_load_existing_prompt(self):
        """Should load an existing prompt template."""
        clear_cache()
        content = load_prompt("code_review")
        assert "FIRST TIME" in content
        assert "{story_id}" in content

    def test_html_comments_stripped(self):
        """Should strip HTML comments from loaded prompts."""
        clear_cache()
        content = load_prompt("code_review")
        assert "<!--" not in content
        assert "-->" not in content
        assert content.startswith("You are reviewing")

    def test_load_nonexistent_prompt_raises(self):
        """Should raise PromptError for missing template."""
        clear_cache()
        with pytest.raises(PromptError) as exc_info:
            load_prompt("nonexistent_prompt_xyz")
        assert "not found" in str(exc_info.value)
        assert "nonexistent_prompt_xyz" in str(exc_info.value)

    def test_caching_works(self):
        """Should cache loaded prompts."""
        clear_cache()
        content1 = load_prompt("dev")
        content2 = load_prompt("dev")
        assert content1 is content2

    def test_clear_cache(self):
        """Should clear the cache."""
        load_prompt("dev")
        clear_cache()
        assert load_prompt.cache_info().hits == 0
        assert load_prompt.cache_info().currsize == 0


class TestRenderPrompt:
    """Tests for render_prompt function."""

    def test_render_with_variables(self):
        """Should substitute every variable."""
        clear_cache()
        rendered = render_prompt(
            "fix",
            phase="code_review",
            subject="3-1",
            attempt=2,
            max_attempts=3,
            issues="- [HIGH] missing null check",
        )
        assert "code_review phase for 3-1" in rendered
        assert "attempt 2 of 3" in rendered
        assert "- [HIGH] missing null check" in rendered
        assert "{" not in rendered.split("## Issues to Fix")[0]

    def test_render_missing_variable_raises(self):
        """Should raise PromptError naming the missing variable."""
        clear_cache()
        with pytest.raises(PromptError) as exc_info:
            render_prompt("fix", phase="code_review")
        assert "Missing required variable" in str(exc_info.value)
        assert "fix" in str(exc_info.value)

    def test_render_nonexistent_template_raises(self):
        """Should raise PromptError for an unknown template."""
        clear_cache()
        with pytest.raises(PromptError):
            render_prompt("nonexistent_prompt_xyz", x=1)

    def test_instructions_without_variables(self):
        """Templates without variables render as-is."""
        clear_cache()
        assert render_prompt("json_output_instructions") == load_prompt("json_output_instructions")


class TestBuildSection:
    """Tests for build_section function."""

    def test_with_content(self):
        """Should put a blank line between header and content."""
        assert build_section("body", "## Header") == "## Header\n\nbody\n"

    def test_with_none_and_empty_msg(self):
        """Should fall back to the empty message."""
        assert build_section(None, "## Header", "(none)") == "## Header\n\n(none)\n"

    def test_with_none_and_no_empty_msg(self):
        """Should drop the section entirely."""
        assert build_section(None, "## Header") == ""

    def test_with_empty_string_content(self):
        """Empty content counts as missing."""
        assert build_section("", "## Header") == ""


class TestTruncateFragment:
    """Tests for truncate_fragment function."""

    def test_short_content_untouched(self):
        """Content within the limit is returned as-is."""
        assert truncate_fragment("short", 100) == "short"

    def test_head_keeps_start(self):
        """Should keep the beginning and mark the cut."""
        content = "A" * 500 + "B" * 500
        truncated = truncate_fragment(content, 200)
        assert len(truncated.encode("utf-8")) <= 200
        assert truncated.startswith("A")
        assert "CONTENT TRUNCATED - 1000 bytes total" in truncated

    def test_tail_keeps_end(self):
        """Should keep the end when asked for the tail."""
        content = "A" * 500 + "B" * 500
        truncated = truncate_fragment(content, 200, keep="tail")
        assert len(truncated.encode("utf-8")) <= 200
        assert truncated.endswith("B")
        assert "CONTENT TRUNCATED" in truncated

    def test_multibyte_not_split(self):
        """Should never cut a UTF-8 character in half."""
        truncated = truncate_fragment("é" * 400, 150)
        assert len(truncated.encode("utf-8")) <= 150


class TestAssemblePrompt:
    """Tests for budgeted prompt assembly."""

    def test_everything_fits(self):
        """Should join fragments with blank lines when under budget."""
        fragments = [
            PromptFragment("instructions", "do it", Priority.CRITICAL),
            PromptFragment("story", "story text", Priority.HIGH),
        ]
        assembled = assemble_prompt(fragments, ceiling=1000, reserve=0)
        assert assembled.text == "do it\n\nstory text"
        assert assembled.included == ["instructions", "story"]
        assert assembled.warnings == []

    def test_keeps_caller_order(self):
        """Priority decides what is cut, not where it appears."""
        fragments = [
            PromptFragment("log", "log", Priority.LOW),
            PromptFragment("instructions", "do it", Priority.CRITICAL),
        ]
        assembled = assemble_prompt(fragments, ceiling=1000, reserve=0)
        assert assembled.included == ["log", "instructions"]

    def test_low_priority_dropped_first(self):
        """Should drop LOW fragments before touching higher ones."""
        fragments = [
            PromptFragment("instructions", "x" * 100, Priority.CRITICAL),
            PromptFragment("decision_log", "y" * 300, Priority.LOW),
        ]
        assembled = assemble_prompt(fragments, ceiling=250, reserve=0)
        assert assembled.dropped == ["decision_log"]
        assert assembled.included == ["instructions"]
        assert any("decision_log: dropped" in w for w in assembled.warnings)

    def test_high_priority_truncated_not_dropped(self):
        """Should truncate HIGH fragments rather than drop them."""
        fragments = [
            PromptFragment("instructions", "x" * 100, Priority.CRITICAL),
            PromptFragment("story", "s" * 1000, Priority.HIGH),
        ]
        assembled = assemble_prompt(fragments, ceiling=400, reserve=0)
        assert assembled.included == ["instructions", "story"]
        assert assembled.truncated == ["story"]
        assert assembled.size <= 400

    def test_reserve_reduces_budget(self):
        """The reserve comes out of the ceiling."""
        fragments = [PromptFragment("handoff", "h" * 100, Priority.MEDIUM)]
        assert assemble_prompt(fragments, ceiling=150, reserve=0).included == ["handoff"]
        assert assemble_prompt(fragments, ceiling=150, reserve=100).dropped == ["handoff"]

    def test_max_bytes_caps_fragment(self):
        """Should cap a fragment at its own limit even with room to spare."""
        fragments = [PromptFragment("decision_log", "old " * 100 + "newest", Priority.LOW,
                                    keep="tail", max_bytes=120)]
        assembled = assemble_prompt(fragments, ceiling=10_000, reserve=0)
        assert assembled.truncated == ["decision_log"]
        assert assembled.text.endswith("newest")
        assert assembled.size <= 120

    def test_empty_fragments_skipped(self):
        """Empty fragments are neither included nor reported dropped."""
        fragments = [PromptFragment("handoff", "", Priority.MEDIUM), PromptFragment("x", "y")]
        assembled = assemble_prompt(fragments, ceiling=100, reserve=0)
        assert assembled.included == ["x"]
        assert assembled.dropped == []


class TestPromptsDir:
    """Tests for prompts directory structure."""

    def test_prompts_dir_exists(self):
        """Templates ship inside the package."""
        assert PROMPTS_DIR.exists()
        assert PROMPTS_DIR.is_dir()

    def test_all_expected_prompts_exist(self):
        """All phase templates should be present."""
        expected = [
            "dev",
            "arch_compliance",
            "code_review",
            "test_quality",
            "fix",
            "traceability",
            "traceability_fix",
            "acceptance_doc",
            "acceptance_gate",
            "json_output_instructions",
        ]
        for name in expected:
            assert (PROMPTS_DIR / f"{name}.md").exists(), f"Missing prompt: {name}.md"

    def test_prompts_have_documentation_header(self):
        """Each prompt should document its variables in an HTML comment."""
        for path in PROMPTS_DIR.glob("*.md"):
            assert path.read_text().startswith("<!--"), f"{path.name} lacks a documentation header"

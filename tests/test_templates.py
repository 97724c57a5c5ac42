from __future__ import annotations

import pytest

from squad_mcp.exceptions import RenderError
from squad_mcp.templates import (
    TemplateRenderer,
    escape_for_double_quotes,
    escape_html,
    split_args,
)


@pytest.fixture
def renderer():
    return TemplateRenderer()


# ---------------------------------------------------------------------------
# Interpolation
# ---------------------------------------------------------------------------


class TestInterpolation:
    def test_escaped_output(self, renderer):
        text = renderer.render_text("echo <%= value %>", {"value": "<a href='x'>&\"</a>"})
        assert text == "echo &lt;a href=&#39;x&#39;&gt;&amp;&#34;&lt;/a&gt;"

    def test_raw_output(self, renderer):
        text = renderer.render_text("echo <%- value %>", {"value": "<b>'hi'</b>"})
        assert text == "echo <b>'hi'</b>"

    def test_missing_key_renders_empty(self, renderer):
        assert renderer.render_text("a<%= nope %>b", {}) == "ab"

    def test_none_renders_empty(self, renderer):
        assert renderer.render_text("[<%- value %>]", {"value": None}) == "[]"

    def test_booleans_and_numbers(self, renderer):
        text = renderer.render_text("<%- a %> <%- b %> <%- n %>", {"a": True, "b": False, "n": 42})
        assert text == "true false 42"

    def test_literal_open_tag(self, renderer):
        assert renderer.render_text("x <%% y", {}) == "x <% y"

    def test_comment_is_dropped(self, renderer):
        assert renderer.render_text("a<%# ignored %>b", {}) == "ab"

    def test_trim_newline_after_tag(self, renderer):
        template = "<% if (flag) { -%>\nyes\n<% } -%>\nend"
        assert renderer.render_text(template, {"flag": True}) == "yes\nend"


# ---------------------------------------------------------------------------
# Conditionals
# ---------------------------------------------------------------------------


class TestConditionals:
    def test_truthy_branch(self, renderer):
        template = "run <% if (chatId) { %>--resume <%- chatId %><% } %>"
        assert renderer.render_text(template, {"chatId": "abc"}) == "run --resume abc"

    def test_falsy_branch(self, renderer):
        template = "run <% if (chatId) { %>--resume <%- chatId %><% } %>"
        assert renderer.render_text(template, {"chatId": None}) == "run "
        assert renderer.render_text(template, {"chatId": ""}) == "run "
        assert renderer.render_text(template, {}) == "run "

    def test_negation(self, renderer):
        template = "<% if (!quiet) { %>loud<% } %>"
        assert renderer.render_text(template, {"quiet": False}) == "loud"
        assert renderer.render_text(template, {"quiet": True}) == ""

    def test_else_if_else(self, renderer):
        template = "<% if (a) { %>A<% } else if (b) { %>B<% } else { %>C<% } %>"
        assert renderer.render_text(template, {"a": 1}) == "A"
        assert renderer.render_text(template, {"b": 1}) == "B"
        assert renderer.render_text(template, {}) == "C"

    def test_nested_blocks(self, renderer):
        template = "<% if (a) { %>[<% if (b) { %>ab<% } %>]<% } %>"
        assert renderer.render_text(template, {"a": True, "b": True}) == "[ab]"
        assert renderer.render_text(template, {"a": True}) == "[]"
        assert renderer.render_text(template, {"b": True}) == ""


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestRenderErrors:
    def test_property_path_is_rejected(self, renderer):
        with pytest.raises(RenderError, match="Property paths are not supported"):
            renderer.render_text("<%= missing.prop %>", {})

    def test_unclosed_tag(self, renderer):
        with pytest.raises(RenderError, match="Could not find matching close tag"):
            renderer.render_text("echo <%= prompt", {"prompt": "x"})

    def test_unterminated_block(self, renderer):
        with pytest.raises(RenderError, match="Unterminated if block"):
            renderer.render_text("<% if (a) { %>x", {"a": True})

    def test_stray_closing_brace(self, renderer):
        with pytest.raises(RenderError, match="Unexpected closing brace"):
            renderer.render_text("x<% } %>", {})

    def test_arbitrary_code_is_rejected(self, renderer):
        with pytest.raises(RenderError, match="Unsupported statement"):
            renderer.render_text("<% require('child_process') %>", {})

    def test_function_call_expression_is_rejected(self, renderer):
        with pytest.raises(RenderError, match="Unsupported expression"):
            renderer.render_text("<%= process() %>", {})

    def test_error_carries_excerpt_and_cause(self, renderer):
        template = "x" * 150 + "<%= a.b %>"
        with pytest.raises(RenderError) as exc_info:
            renderer.render_text(template, {})
        err = exc_info.value
        assert err.template_excerpt == "x" * 100
        assert err.original_error is not None
        assert "Template rendering failed" in err.message


# ---------------------------------------------------------------------------
# Argument splitting
# ---------------------------------------------------------------------------


class TestSplitArgs:
    def test_double_quotes_group(self):
        assert split_args('a "b c" d') == ["a", "b c", "d"]

    def test_single_quotes_group(self):
        assert split_args("cmd 'one two'  three") == ["cmd", "one two", "three"]

    def test_whitespace_inside_quotes_preserved(self):
        assert split_args('echo "line1\n\tline2"') == ["echo", "line1\n\tline2"]

    def test_other_quote_kept_inside(self):
        assert split_args("say \"it's\"") == ["say", "it's"]

    def test_unmatched_quote_runs_to_end(self):
        assert split_args('echo "never closed here') == ["echo", "never closed here"]

    def test_whitespace_only_is_empty(self):
        assert split_args("  \n\t ") == []

    def test_empty_quoted_token_dropped(self):
        assert split_args('a "" b') == ["a", "b"]

    def test_non_blank_input_yields_tokens(self):
        for text in ["x", "  y  ", '"z"', "a\nb", "'q r'"]:
            assert split_args(text)


class TestRender:
    def test_render_returns_argv(self, renderer):
        args = renderer.render('agent --print "<%- prompt %>"', {"prompt": "do the thing"})
        assert args == ["agent", "--print", "do the thing"]

    def test_render_command_keeps_text(self, renderer):
        command = renderer.render_command('  echo "<%- p %>"\n', {"p": "a b"})
        assert command.text == 'echo "a b"'
        assert command.args == ["echo", "a b"]
        assert command.head == "echo"
        assert not command.is_empty

    def test_blank_rendering_is_empty(self, renderer):
        command = renderer.render_command("<% if (x) { %>run<% } %>\n", {})
        assert command.is_empty
        assert command.head == ""


# ---------------------------------------------------------------------------
# Escaping helpers
# ---------------------------------------------------------------------------


class TestEscaping:
    def test_escape_html(self):
        assert escape_html("&<>\"'") == "&amp;&lt;&gt;&#34;&#39;"

    def test_escape_for_double_quotes(self):
        assert escape_for_double_quotes('a\\b $HOME `id` "q"') == 'a\\\\b \\$HOME \\`id\\` \\"q\\"'

    def test_newlines_become_literal(self):
        assert escape_for_double_quotes("one\r\ntwo\nthree") == "one\\ntwo\\nthree"

import html
import re

import pytest

from chorus.remote.format import (
    escape_html,
    format_cost,
    format_duration,
    format_output,
    short_path,
    split_message,
    truncate,
)


def test_escape_html():
    assert escape_html("a < b && c > d") == "a &lt; b &amp;&amp; c &gt; d"


def test_inline_code_and_escaping():
    assert format_output("Run `make test` now & <wait>") == "Run <code>make test</code> now &amp; &lt;wait&gt;"


def test_fenced_block_keeps_language_and_escapes_body():
    text = "Here:\n```python\nprint(1 < 2)\n```\nDone"
    assert format_output(text) == 'Here:\n<pre><code class="language-python">print(1 &lt; 2)</code></pre>\nDone'


def test_fenced_block_without_language_and_inline_ticks_inside():
    text = "```\nuse `x` here\n```"
    assert format_output(text) == "<pre>use `x` here</pre>"


def test_ansi_is_stripped_and_empty_output_is_marked():
    assert format_output("\x1b[31mred\x1b[0m") == "red"
    assert format_output("") == "<i>No output</i>"
    assert format_output("  \n ") == "<i>No output</i>"


def test_split_prefers_paragraph_breaks():
    text = "a" * 50 + "\n\n" + "b" * 50
    assert split_message(text, 60) == ["a" * 50, "b" * 50]


def test_split_falls_back_to_hard_cut():
    chunks = split_message("x" * 130, 50)
    assert [len(c) for c in chunks] == [50, 50, 30]


def test_split_ignores_boundaries_too_early_in_the_window():
    chunks = split_message("ab " + "c" * 100, 50)
    assert [len(c) for c in chunks] == [50, 50, 3]
    assert all(len(c) <= 50 for c in chunks)


def test_split_rejects_a_non_positive_limit():
    for max_len in (0, -5):
        with pytest.raises(ValueError):
            split_message("some text", max_len)


def test_formatted_chunks_keep_every_visible_character():
    text = "\n\n".join(
        f"Step {i}: run `make check-{i}` when a < b && c > d, then continue."
        for i in range(12)
    )
    text += "\n\n```python\nfor item in items:\n    if item < limit:\n        total += item\n```\nAll done & <clean>."

    chunks = split_message(format_output(text), 80)
    assert len(chunks) > 1
    assert all(len(chunk) <= 80 for chunk in chunks)

    visible = html.unescape(re.sub(r"<[^>]+>", "", "".join(chunks)))
    expected = re.sub(r"```\w*", "", text).replace("`", "")
    assert re.sub(r"\s", "", visible) == re.sub(r"\s", "", expected)


def test_short_text_is_not_split():
    assert split_message("hello", 4000) == ["hello"]


def test_durations_and_costs():
    assert format_duration(450) == "450ms"
    assert format_duration(2500) == "3s"
    assert format_duration(59_400) == "59s"
    assert format_duration(60_000) == "1m"
    assert format_duration(125_000) == "2m5s"
    assert format_cost(0.0042) == "$0.0042"
    assert format_cost(1.5) == "$1.50"


def test_truncate_and_short_path():
    assert truncate("abcdef", 5) == "ab..."
    assert truncate("abc", 5) == "abc"
    assert short_path("/home/dev/project/src/app.py") == ".../src/app.py"
    assert short_path("src/app.py") == "src/app.py"

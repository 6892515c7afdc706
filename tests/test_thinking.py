from llamune.thinking import merge_thinking, split_thinking


def test_plain_text_is_untouched():
    assert split_thinking("Just an answer.") == ("Just an answer.", "")
    assert split_thinking("Just an answer.", final=True) == ("Just an answer.", "")


def test_closed_block_is_separated():
    content, thinking = split_thinking("<think>weigh options</think>\n\nThe answer is 4.")
    assert content == "The answer is 4."
    assert thinking == "weigh options"


def test_unclosed_block_counts_as_thinking_in_progress():
    content, thinking = split_thinking("<think>still going")
    assert content == ""
    assert thinking == "still going"


def test_partial_open_marker_is_withheld_until_final():
    assert split_thinking("Hello <thi") == ("Hello ", "")
    assert split_thinking("Hello <thi", final=True) == ("Hello <thi", "")


def test_partial_close_marker_is_withheld_from_thinking():
    content, thinking = split_thinking("<think>plan</thi")
    assert content == ""
    assert thinking == "plan"


def test_cumulative_prefixes_never_leak_markers():
    text = "<think>a</think>b"
    for end in range(1, len(text) + 1):
        content, _ = split_thinking(text[:end])
        assert "<" not in content


def test_multiple_blocks_are_joined():
    content, thinking = split_thinking("<think>one</think>mid<think>two</think>end", final=True)
    assert content == "midend"
    assert thinking == "one\ntwo"


def test_merge_thinking_skips_empty_parts():
    assert merge_thinking("", None, "  ") is None
    assert merge_thinking("backend", "inline") == "backend\ninline"

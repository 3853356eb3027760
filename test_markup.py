"""Tool-call markup parser and streaming TagFilter."""

from engine.markup import TagFilter, parse_tool_calls


def _filter_all(chunks):
    f = TagFilter()
    visible = "".join(f.feed(c) for c in chunks) + f.flush()
    return visible, f.raw


def test_parse_self_closing_and_body():
    text = ('Let me look.\n<tool name="read_file" path="src/app.py"/>\n'
            '<tool name="write_file" path="a.txt">\nhello\n</tool>')
    calls = parse_tool_calls(text)
    assert [c.name for c in calls] == ["read_file", "write_file"]
    assert calls[0].parameters == {"path": "src/app.py"}
    assert calls[0].inline_content == ""
    assert calls[1].parameters == {"path": "a.txt"}
    assert calls[1].inline_content == "hello"


def test_parse_unescapes_attributes():
    calls = parse_tool_calls('<tool name="grep" pattern="a &lt; b &amp;&amp; c"/>')
    assert calls[0].parameters["pattern"] == "a < b && c"


def test_parse_keeps_gt_inside_quoted_attribute():
    calls = parse_tool_calls('<tool name="run_command" command="echo hi > out.txt"/>')
    assert calls[0].parameters["command"] == "echo hi > out.txt"


def test_parse_skips_nameless_and_unterminated():
    assert parse_tool_calls('<tool path="x"/>') == []
    assert parse_tool_calls('<tool name="write_file" path="x">no end') == []
    assert parse_tool_calls("") == []


def test_parse_body_may_contain_self_closing_text():
    text = '<tool name="write_file" path="x.html"><br/><img src="a"/></tool>'
    calls = parse_tool_calls(text)
    assert len(calls) == 1
    assert calls[0].inline_content == '<br/><img src="a"/>'


def test_preview_truncates():
    call = parse_tool_calls('<tool name="grep" pattern="' + "x" * 200 + '"/>')[0]
    preview = call.preview(40)
    assert preview.startswith("grep(")
    assert preview.endswith("...)")


def test_filter_hides_markup_split_across_chunks():
    chunks = ["Reading now. <to", 'ol name="read_file" pa', 'th="a.py"/', "> done"]
    visible, raw = _filter_all(chunks)
    assert visible == "Reading now.  done"
    assert raw == "".join(chunks)


def test_filter_hides_body_and_close_tag_split():
    chunks = ['Writing.<tool name="write_file" path="a">', "line1\n<br/>", "</to", "ol>After"]
    visible, _ = _filter_all(chunks)
    assert visible == "Writing.After"


def test_filter_passes_plain_angle_brackets():
    visible, _ = _filter_all(["if a <", " b and <toolbar> x"])
    assert visible == "if a < b and <toolbar> x"


def test_filter_flush_releases_trailing_partial():
    f = TagFilter()
    assert f.feed("value <to") == "value "
    assert f.flush() == "<to"


def test_filter_flush_drops_unterminated_markup():
    f = TagFilter()
    assert f.feed('ok <tool name="write_file" path="a">partial') == "ok "
    assert f.inside_markup
    assert f.flush() == ""

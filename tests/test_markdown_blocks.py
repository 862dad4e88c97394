import pytest

from ragcore.chunking.markdown import HeadingTrail, parse_blocks
from ragcore.errors import ChunkingError


def test_block_kinds_and_offsets():
    text = "# Title\n\nFirst para\nstill first.\n\n- item one\n- item two\n\n```py\nx = 1\n```\n"
    blocks = parse_blocks(text)
    assert [b.kind for b in blocks] == ["heading", "paragraph", "list_item", "list_item", "code"]

    heading, para, item1, item2, code = blocks
    assert (heading.level, heading.title) == (1, "Title")
    assert text[para.start:para.end] == "First para\nstill first."
    assert text[item1.start:item1.end] == "- item one"
    assert text[item2.start:item2.end] == "- item two"
    assert text[code.start:code.end] == "```py\nx = 1\n```"
    assert code.atomic and not para.atomic


def test_fence_content_is_not_parsed():
    text = "~~~\n# not a heading\n```\nstill code\n~~~\n\nafter"
    blocks = parse_blocks(text)
    assert [b.kind for b in blocks] == ["code", "paragraph"]


def test_closing_fence_must_be_at_least_as_long():
    text = "````\ncode\n```\nmore code\n````"
    blocks = parse_blocks(text)
    assert len(blocks) == 1
    assert blocks[0].end == len(text)


def test_unterminated_fence_reports_offset():
    text = "intro\n\n```\nnever closed\n"
    with pytest.raises(ChunkingError) as info:
        parse_blocks(text, origin="broken.md")
    assert info.value.origin == "broken.md"
    assert info.value.offset == text.index("```")


def test_inline_backticks_do_not_open_a_fence():
    blocks = parse_blocks("```a``` is inline code\n\nnext")
    assert [b.kind for b in blocks] == ["paragraph", "paragraph"]


def test_heading_trail_is_root_first():
    text = "# A\n\ntext a\n\n## B\n\ntext b\n\n### C\n\ntext c\n\n## D\n\ntext d"
    trail = HeadingTrail(parse_blocks(text))
    assert trail.path_at(0) == ["A"]
    assert trail.path_at(text.index("text b")) == ["A", "B"]
    assert trail.path_at(text.index("text c")) == ["A", "B", "C"]
    assert trail.path_at(text.index("text d")) == ["A", "D"]


def test_text_before_first_heading_has_empty_path():
    text = "preamble\n\n# Later"
    assert HeadingTrail(parse_blocks(text)).path_at(0) == []

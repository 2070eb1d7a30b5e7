import pytest

from multi_replace import TextDocument, ReplaceSession, ReplaceConfig, SortPermutation
from multi_replace import sort_key


def make_session(text, **config):
    doc = TextDocument(text)
    return doc, ReplaceSession(doc, ReplaceConfig(**config))


def test_sort_key_orders_numbers_before_text():
    values = ["b", "10", "a", "9", " 2.5 ", "-1"]
    assert sorted(values, key=sort_key) == ["-1", " 2.5 ", "9", "10", "a", "b"]


def test_numeric_sort_with_header_and_restore():
    original = "h,n\nb,2\na,10\nc,1\n"
    doc, session = make_session(original, header_lines=1)
    perm = session.sort_by_column(2)
    assert doc.text == "h,n\nc,1\nb,2\na,10\n"
    assert perm.order == [0, 3, 1, 2]
    assert session.sorter.is_sorted

    assert session.restore_original_order()
    assert doc.text == original
    assert not session.sorter.is_sorted


def test_lexical_sort():
    doc, session = make_session("x,pear\ny,apple\nz,fig")
    session.sort_by_column(2)
    assert doc.text == "y,apple\nz,fig\nx,pear"


def test_sort_is_stable():
    doc, session = make_session("x,1\ny,1\nz,0")
    session.sort_by_column(2)
    assert doc.text == "z,0\nx,1\ny,1"


def test_descending_sort_is_stable():
    doc, session = make_session("x,1\ny,1\nz,2")
    session.sort_by_column(2, "descending")
    assert doc.text == "z,2\nx,1\ny,1"


def test_sort_keeps_crlf():
    doc, session = make_session("b\r\na\r\n")
    session.sort_by_column(1)
    assert doc.text == "a\r\nb\r\n"


def test_quoted_values_sort_without_quotes():
    doc, session = make_session('"10",x\n"9",y', quote_char='"')
    session.sort_by_column(1)
    assert doc.text == '"9",y\n"10",x'


def test_repeated_sorts_restore_first_order():
    original = "c,2\na,3\nb,1"
    doc, session = make_session(original)
    session.sort_by_column(1)
    session.sort_by_column(2, "descending")
    assert doc.text == "a,3\nc,2\nb,1"
    assert session.restore_original_order()
    assert doc.text == original


def test_restore_without_sort_is_noop():
    doc, session = make_session("b\na")
    assert not session.restore_original_order()
    assert doc.text == "b\na"


def test_restore_refused_after_line_count_change():
    doc, session = make_session("b\na")
    session.sort_by_column(1)
    doc.replace(doc.length(), doc.length(), "\nc")
    assert not session.restore_original_order()
    assert doc.text == "a\nb\nc"


def test_short_rows_sort_as_empty_text():
    doc, session = make_session("x,b\ny\nz,a")
    session.sort_by_column(2)
    assert doc.text == "y\nz,a\nx,b"


@pytest.mark.parametrize("order", [[0, 1, 2], [2, 0, 1], [1, 2, 0]])
def test_permutation_inverse(order):
    perm = SortPermutation(order)
    inverse = perm.inverse()
    assert [order[i] for i in inverse] == [0, 1, 2]


def test_sort_keeps_each_rows_line_break():
    original = "b\r\na\nc"
    doc, session = make_session(original)
    session.sort_by_column(1)
    assert doc.text == "a\r\nb\nc"
    assert session.restore_original_order()
    assert doc.text == original


def test_sort_after_stray_cancel():
    doc, session = make_session("b,2\na,1")
    session.cancel()
    assert session.sort_by_column(2) is not None
    assert doc.text == "a,1\nb,2"

import pytest

from orgchat.core.errors import ValidationFailed
from orgchat.services.pagination import Page, offset_for, total_pages, validate_window


@pytest.mark.parametrize(
    "total, page_size, expected",
    [(0, 20, 0), (1, 20, 1), (20, 20, 1), (21, 20, 2), (10, 3, 4), (100, 1, 100)],
)
def test_total_pages(total, page_size, expected):
    assert total_pages(total, page_size) == expected


def test_offset_is_one_based():
    assert offset_for(1, 20) == 0
    assert offset_for(3, 20) == 40


@pytest.mark.parametrize("page, page_size", [(0, 20), (-1, 20), (1, 0), (1, 101)])
def test_out_of_range_windows_are_rejected(page, page_size):
    with pytest.raises(ValidationFailed) as exc:
        validate_window(page, page_size)
    assert exc.value.errors


def test_bounds_are_inclusive():
    validate_window(1, 1)
    validate_window(7, 100)


def test_empty_result_is_a_valid_page():
    page = Page.build([], total=0, page=1, page_size=20)
    assert page.items == []
    assert page.total_pages == 0


def test_page_past_the_end_keeps_real_page_count():
    page = Page.build([], total=10, page=3, page_size=20)
    assert page.total_pages == 1
    assert page.page == 3

from app.core.pagination import page_to_offset, paginate


def test_paginate_clamps():
    assert paginate(0, -5) == (1, 0)
    assert paginate(500, 10) == (200, 10)


def test_page_to_offset():
    assert page_to_offset(1, 20) == (20, 0)
    assert page_to_offset(3, 20) == (20, 40)
    assert page_to_offset(0, 20) == (20, 0)
    assert page_to_offset(2, 1000) == (200, 200)

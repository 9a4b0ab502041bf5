from __future__ import annotations

import pytest

from esglabel.errors import ValidationError
from esglabel.pages import (
    offset_to_start_page, page_index_from_name, parse_offset, resolve_page, start_page_to_offset,
)


class TestResolvePage:
    @pytest.mark.parametrize("page,offset", [(1, 0), (1, 4), (17, 3), (250, 0)])
    def test_adds_offset(self, page, offset):
        assert resolve_page(page, offset) == page + offset


class TestStartPage:
    def test_start_page_one_is_zero_offset(self):
        assert start_page_to_offset(1) == 0

    def test_start_page_five(self):
        assert start_page_to_offset(5) == 4
        assert offset_to_start_page(4) == 5

    @pytest.mark.parametrize("bad", [0, -3, True, "5", 2.0])
    def test_rejects_invalid(self, bad):
        with pytest.raises(ValidationError):
            start_page_to_offset(bad)


class TestParseOffset:
    def test_int(self):
        assert parse_offset(3) == 3

    def test_numeric_string(self):
        assert parse_offset(" 12 ") == 12

    @pytest.mark.parametrize("bad", [-1, "-2", "abc", "", None, 1.5, False])
    def test_rejects(self, bad):
        with pytest.raises(ValidationError):
            parse_offset(bad)


class TestPageIndexFromName:
    def test_page_suffix(self):
        assert page_index_from_name("acme_report_page_12.pdf") == 12

    def test_case_insensitive(self):
        assert page_index_from_name("acme_Page_3.PDF") == 3

    def test_no_suffix(self):
        assert page_index_from_name("acme_report.pdf") is None
        assert page_index_from_name("page_3.pdf.bak") is None

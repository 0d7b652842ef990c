"""
Unit Tests for ContentPaginationService

Tests page filling, orphan prevention and overflow warnings.
"""

import pytest

from teachspark.pagination import A4, ContentPaginationService, content_length


def fill_blank(items=2):
    return {"type": "fill-blank", "properties": {"items": [{"text": "___"}] * items}}


def title(text="Section"):
    return {"type": "title-block", "properties": {"text": text}}


class TestContentPagination:
    """Test suite for ContentPaginationService."""

    @pytest.fixture
    def paginator(self):
        return ContentPaginationService(A4)

    def test_available_height(self, paginator):
        assert paginator.available_height == 1123 - 80 - 50

    def test_height_estimates(self, paginator):
        assert paginator.estimate_element_height(fill_blank(2)) == 180
        assert paginator.estimate_element_height(
            {"type": "multiple-choice", "properties": {"items": [{}, {}, {}]}}) == 300
        long_text = {"type": "paragraph-block", "properties": {"text": "a" * 450}}
        assert paginator.estimate_element_height(long_text) == 300

    def test_word_bank_adds_height(self, paginator):
        element = fill_blank(2)
        element["properties"]["wordBank"] = ["a", "b", "c", "d", "e"]
        assert paginator.estimate_element_height(element) == 180 + 40 + 80

    def test_age_multiplier(self):
        paginator = ContentPaginationService(A4, age_range="3-5")
        assert paginator.estimate_element_height(fill_blank(2)) == pytest.approx(270)

    def test_empty_input(self, paginator):
        result = paginator.paginate([])
        assert result.total_pages == 0
        assert result.pages == []

    def test_fills_pages_greedily(self, paginator):
        result = paginator.paginate([fill_blank() for _ in range(10)], page_title="Shapes Worksheet")
        assert result.elements_per_page == [4, 4, 2]
        assert result.warnings == []
        assert [p["pageNumber"] for p in result.pages] == [1, 2, 3]
        assert result.pages[0]["title"] == "Shapes Worksheet"
        assert result.pages[0]["pageType"] == "pdf"

    def test_default_page_titles(self, paginator):
        result = paginator.paginate([fill_blank()])
        assert result.pages[0]["title"] == "Page 1"

    def test_title_moves_with_following_content(self, paginator):
        elements = [fill_blank(), fill_blank(), fill_blank(), title("Part 2"), fill_blank()]
        result = paginator.paginate(elements)
        assert result.elements_per_page == [3, 2]
        assert result.pages[1]["elements"][0]["properties"]["text"] == "Part 2"

    def test_trailing_structural_element_is_not_left_behind(self, paginator):
        elements = [fill_blank(), fill_blank(), fill_blank(), fill_blank(), title("Part 2"), fill_blank()]
        result = paginator.paginate(elements)
        first_page_types = [e["type"] for e in result.pages[0]["elements"]]
        assert first_page_types[-1] != "title-block"
        assert result.pages[1]["elements"][0]["type"] == "title-block"

    def test_oversized_element_gets_own_page_with_warning(self, paginator):
        result = paginator.paginate([fill_blank(), fill_blank(30), fill_blank()])
        assert result.elements_per_page == [1, 1, 1]
        assert len(result.warnings) == 1
        assert result.warnings[0]["pageNumber"] == 2
        assert result.to_dict()["overflowElements"] == 1

    def test_element_order_is_preserved(self, paginator):
        elements = [dict(fill_blank(), id=i) for i in range(9)]
        result = paginator.paginate(elements)
        flattened = [e["id"] for page in result.pages for e in page["elements"]]
        assert flattened == list(range(9))


class TestContentLength:

    def test_counts_text_options_and_items(self):
        element = {"properties": {
            "question": "abc",
            "options": [{"text": "xy"}, "z"],
            "items": [{"text": "1234", "answer": "5"}],
        }}
        assert content_length(element) == 3 + 3 + 5

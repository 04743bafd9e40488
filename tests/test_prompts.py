import pytest

from modelmcp.utils.errors import ValidationError


class TestPrompts:
    def test_listing(self, catalog):
        assert catalog.prompts["summarize_book"].to_dict() == {
            "name": "summarize_book",
            "title": "Summarize a book",
            "description": "Ask for a short summary of a book",
            "arguments": [
                {"name": "title", "description": "title (String)", "required": True},
                {"name": "words", "description": "words (Integer)", "required": True},
            ],
        }

    def test_render(self, catalog):
        rendered = catalog.get_prompt("summarize_book").render({"title": "Jane Eyre", "words": 50})
        assert rendered["messages"] == [
            {"role": "user", "content": {"type": "text", "text": "Summarize Jane Eyre in 50 words."}}
        ]

    def test_missing_argument(self, catalog):
        """Error condition: every declared input must be supplied."""
        with pytest.raises(ValidationError) as excinfo:
            catalog.get_prompt("summarize_book").render({"title": "Jane Eyre"})
        assert excinfo.value.field == "words"

    def test_unknown_argument(self, catalog):
        with pytest.raises(ValidationError):
            catalog.get_prompt("summarize_book").render({"title": "x", "words": 1, "tone": "dry"})

    def test_unknown_prompt(self, catalog):
        assert catalog.get_prompt("nope") is None

"""Tests for DocumentParser extraction and cleaning."""

import io
import json

import pytest

from persona.core.exceptions import ParseError, UnsupportedFormatError
from persona.processors.document_parser import DocumentParser, clean_text


@pytest.fixture
def parser():
    return DocumentParser()


class TestCleanText:
    def test_removes_nul_and_control_characters(self) -> None:
        assert clean_text("a\x00b\x07c") == "abc"

    def test_collapses_horizontal_whitespace_and_blank_runs(self) -> None:
        assert clean_text("  one \t two\r\n\n\n\nthree  ") == "one two\n\nthree"

    def test_empty(self) -> None:
        assert clean_text("") == ""


class TestPlainText:
    async def test_utf8_with_bom(self, parser) -> None:
        blocks = await parser.parse(b"\xef\xbb\xbfHello, world", "text/plain", "hello.txt")
        assert [b.text for b in blocks] == ["Hello, world"]

    async def test_invalid_utf8_is_parse_error(self, parser) -> None:
        with pytest.raises(ParseError) as exc_info:
            await parser.parse(b"\xff\xfe\xfa", "text/plain", "broken.txt")
        assert "broken.txt" in exc_info.value.message

    async def test_whitespace_only_yields_no_blocks(self, parser) -> None:
        assert await parser.parse(b"   \n\n  ", "text/plain", "empty.txt") == []

    async def test_unsupported_format_raises(self, parser) -> None:
        with pytest.raises(UnsupportedFormatError):
            await parser.parse(b"PK\x03\x04", "application/zip", "bundle.zip")


class TestCsv:
    async def test_rows_become_labelled_blocks(self, parser) -> None:
        content = b"name,role\nAria,Mage\n,\nBram,Knight\n"
        blocks = await parser.parse(content, "text/csv", "cast.csv")
        assert [b.text for b in blocks] == ["name: Aria\nrole: Mage", "name: Bram\nrole: Knight"]
        assert [b.metadata["row"] for b in blocks] == [1, 3]

    async def test_extra_columns_get_positional_names(self, parser) -> None:
        blocks = await parser.parse(b"name\nAria,extra\n", "text/csv", "cast.csv")
        assert blocks[0].text == "name: Aria\ncolumn_2: extra"

    async def test_header_only(self, parser) -> None:
        assert await parser.parse(b"name,role\n", "text/csv", "cast.csv") == []

    async def test_unterminated_quote_is_parse_error(self, parser) -> None:
        with pytest.raises(ParseError):
            await parser.parse(b'name,role\n"Aria,Mage\n', "text/csv", "cast.csv")


class TestJson:
    async def test_string_leaves_with_pointers(self, parser) -> None:
        document = {"name": "Aria", "tags": ["brave", "loyal"], "age": 19, "a/b": "slash"}
        blocks = await parser.parse(json.dumps(document).encode(), "application/json", "aria.json")
        assert [(b.text, b.metadata["pointer"]) for b in blocks] == [
            ("Aria", "/name"),
            ("brave", "/tags/0"),
            ("loyal", "/tags/1"),
            ("slash", "/a~1b"),
        ]

    async def test_root_string(self, parser) -> None:
        blocks = await parser.parse(b'"just text"', "application/json", "root.json")
        assert blocks[0].metadata == {"pointer": "/"}

    async def test_malformed_json(self, parser) -> None:
        with pytest.raises(ParseError) as exc_info:
            await parser.parse(b'{"name": ', "application/json", "bad.json")
        assert "malformed JSON" in exc_info.value.message


class TestHtml:
    async def test_scripts_and_styles_are_dropped(self, parser) -> None:
        html = b"<html><head><style>p{}</style><script>alert(1)</script></head><body><p>Hello</p><p>World</p></body></html>"
        blocks = await parser.parse(html, "text/html", "page.html")
        assert len(blocks) == 1
        assert "Hello" in blocks[0].text
        assert "World" in blocks[0].text
        assert "alert" not in blocks[0].text

    async def test_whitespace_is_collapsed(self, parser) -> None:
        html = b"<body>\n  <h1>Aria</h1>\n\n\n  <p>A young\n     mage\tfrom the hills.</p>\n  <ul><li>Fire</li><li>Ice</li></ul>\n</body>"
        blocks = await parser.parse(html, "text/html", "page.html")
        assert blocks[0].text == "Aria A young mage from the hills. Fire Ice"


class TestPdf:
    async def test_one_block_per_page(self, parser) -> None:
        import fitz

        doc = fitz.open()
        for text in ("First page lore", "Second page lore"):
            page = doc.new_page()
            page.insert_text((72, 72), text)
        content = doc.tobytes()
        doc.close()

        blocks = await parser.parse(content, "application/pdf", "lore.pdf")
        assert [b.metadata["page"] for b in blocks] == [1, 2]
        assert all(b.metadata["total_pages"] == 2 for b in blocks)
        assert "First page lore" in blocks[0].text

    async def test_corrupt_pdf(self, parser) -> None:
        with pytest.raises(ParseError):
            await parser.parse(b"this is not a pdf document", "application/pdf", "broken.pdf")


class TestDocx:
    async def test_paragraphs_and_tables(self, parser) -> None:
        import docx

        document = docx.Document()
        document.add_paragraph("Aria grew up in the northern hills.")
        document.add_paragraph("")
        table = document.add_table(rows=1, cols=3)
        table.rows[0].cells[0].text = "sword"
        table.rows[0].cells[2].text = "oak"
        buffer = io.BytesIO()
        document.save(buffer)

        blocks = await parser.parse(
            buffer.getvalue(),
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            "aria.docx",
        )
        assert blocks[0].text == "Aria grew up in the northern hills.\nsword | | oak"

    async def test_corrupt_docx(self, parser) -> None:
        with pytest.raises(ParseError):
            await parser.parse(b"not a zip", None, "broken.docx")

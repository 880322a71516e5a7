"""
Tests for email body normalization: markup stripped, table structure kept as tabs/newlines.
"""

from order_ingest.extract import (
    decode_entities,
    normalize_email_body,
    text_lines,
    truncate_for_fallback,
)


class TestNormalizeEmailBody:
    """HTML and plain bodies both become line/tab-delimited text."""

    def test_table_rows_become_lines_and_cells_become_tabs(self):
        body = (
            "<table>\n"
            "  <tr><td>12 DALLAS</td></tr>\n"
            "  <tr>\n"
            "    <td>1043</td>\n"
            "    <td>AZUCAR ESTANDAR</td>\n"
            "    <td>925.00 KILOS</td>\n"
            "  </tr>\n"
            "</table>"
        )
        lines = text_lines(normalize_email_body(body))
        assert lines == ["12 DALLAS", "1043\tAZUCAR ESTANDAR\t925.00 KILOS"]

    def test_style_and_script_content_dropped(self):
        body = "<style>td { color: red }</style><p>Hola</p><script>alert(1)</script><p>Pedido</p>"
        assert text_lines(normalize_email_body(body)) == ["Hola", "Pedido"]

    def test_br_breaks_lines(self):
        body = "<div>uno<br>dos<br/>tres</div>"
        assert text_lines(normalize_email_body(body)) == ["uno", "dos", "tres"]

    def test_plain_text_keeps_newlines_and_tabs(self):
        body = "12 DALLAS\r\n1043\tAZUCAR   ESTANDAR\t925.00 KILOS\r\n"
        lines = text_lines(normalize_email_body(body))
        assert lines == ["12 DALLAS", "1043\tAZUCAR ESTANDAR\t925.00 KILOS"]

    def test_blank_runs_with_tab_collapse_to_one_tab(self):
        assert normalize_email_body("a \t  b") == "a\tb"
        assert normalize_email_body("a\xa0\xa0b") == "a b"

    def test_empty_body(self):
        assert normalize_email_body("") == ""
        assert normalize_email_body(None) == ""

    def test_unterminated_tag_kept_as_text(self):
        assert "<b" in normalize_email_body("hola <b")


class TestEntities:
    def test_named_and_numeric_entities(self):
        assert decode_entities("A&amp;B &lt;x&gt; &quot;q&quot; &#65;") == 'A&B <x> "q" A'

    def test_nbsp_becomes_space(self):
        assert normalize_email_body("<p>ROST.&nbsp;AMATRIAS</p>").strip() == "ROST. AMATRIAS"


class TestTruncateForFallback:
    def test_caps_text(self):
        assert truncate_for_fallback("x" * 50, max_chars=10) == "x" * 10

    def test_default_limit_from_settings(self):
        assert len(truncate_for_fallback("y" * 20_000)) == 12_000

"""
Unit tests for upload parsing.
"""

import base64

from tabular_query.domain.models import Attachment
from tabular_query.engine.uploads import first_tabular_upload, parse_attachment, parse_csv


def b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


class StubSheetCodec:
    def encode(self, columns, rows):
        return b""

    def decode(self, data):
        return ["TRN", "STAGE"], [{"TRN": "T1", "STAGE": "Review"}]


class TestParseCsv:
    """Tests for parse_csv."""

    def test_quoted_fields(self):
        """Should handle quoted commas, newlines and doubled quotes."""
        headers, rows = parse_csv(b'TRN,Note\nT1,"a, b"\nT2,"line1\nline2"\nT3,"say ""hi"""\n')
        assert headers == ["TRN", "Note"]
        assert [r["Note"] for r in rows] == ["a, b", "line1\nline2", 'say "hi"']

    def test_bom_and_blank_lines(self):
        """A UTF-8 BOM and blank lines are ignored."""
        headers, rows = parse_csv("\ufeffTRN,STAGE\n\nT1,Review\n".encode("utf-8"))
        assert headers == ["TRN", "STAGE"]
        assert rows == [{"TRN": "T1", "STAGE": "Review"}]

    def test_short_rows_padded(self):
        """Missing trailing cells read as empty."""
        _, rows = parse_csv(b"A,B\n1\n")
        assert rows == [{"A": "1", "B": ""}]

    def test_not_text(self):
        """Non-UTF-8 bytes are not CSV."""
        assert parse_csv(b"\xff\xfe\x00\x01") is None


class TestParseAttachment:
    """Tests for attachment decoding and parser choice."""

    def test_base64_csv(self):
        """Should decode base64 CSV attachments."""
        upload = parse_attachment(Attachment(name="mine.csv", mime="text/csv", bytes_b64=b64("TRN Number,Stage\nT1,Review\n")))
        assert upload.kind == "csv"
        assert upload.headers_original == ["TRN Number", "Stage"]
        assert upload.headers_canon == ["trn", "stage"]
        assert upload.rows == [{"TRN Number": "T1", "Stage": "Review"}]

    def test_data_url(self):
        """Should decode data: URLs."""
        url = "data:text/csv;base64," + b64("TRN\nT1\n")
        upload = parse_attachment(Attachment(name="x.csv", data_url=url))
        assert upload.rows == [{"TRN": "T1"}]

    def test_camel_case_payload(self):
        """Attachments accept the chat surface's field names."""
        attachment = Attachment.model_validate({"name": "y.csv", "type": "text/csv", "bytesB64": b64("A\n1\n")})
        assert parse_attachment(attachment).rows == [{"A": "1"}]

    def test_spreadsheet_uses_codec(self):
        """xlsx attachments go through the sheet codec."""
        upload = parse_attachment(Attachment(name="book.xlsx", bytes_b64=b64("PK")), StubSheetCodec())
        assert upload.kind == "xlsx"
        assert upload.rows == [{"TRN": "T1", "STAGE": "Review"}]

    def test_spreadsheet_without_codec(self):
        """Without a codec, binary spreadsheet bytes are not parseable."""
        data = base64.b64encode(b"\xff\xfe\x00").decode("ascii")
        assert parse_attachment(Attachment(name="book.xlsx", bytes_b64=data)) is None

    def test_first_tabular_upload_skips_unparseable(self):
        """The first parseable attachment wins."""
        attachments = [Attachment(name="empty.csv"), Attachment(name="ok.csv", bytes_b64=b64("A\n1\n"))]
        assert first_tabular_upload(attachments).name == "ok.csv"

"""
Uploaded file parsing for compare and re-export.

Attachments arrive as base64 or data-URL bytes. CSV is parsed with the csv
module (quoted commas, newlines and doubled quotes included); spreadsheets go
through the injected sheet codec, which reads the first worksheet with its
first row as headers. Anything unparseable yields None.
"""

import base64
import binascii
import csv
import io
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import unquote_to_bytes

from tabular_query.core.errors import SheetCodecUnavailable
from tabular_query.domain.models import Attachment, UploadedFile
from tabular_query.engine.diff import canonical_field_name
from tabular_query.engine.export import SheetCodec, UnavailableSheetCodec
from tabular_query.utils.log_utils import get_logger

logger = get_logger(__name__)

_DATA_URL_RE = re.compile(r"^data:([^;,]*)((?:;[^;,]*)*),(.*)$", re.DOTALL)
_CSV_HINT_RE = re.compile(r"(\.csv$|text/csv|application/csv)", re.IGNORECASE)
_XLSX_HINT_RE = re.compile(r"(\.xlsx?$|spreadsheetml|ms-excel)", re.IGNORECASE)


def attachment_bytes(attachment: Attachment) -> Optional[bytes]:
    """Raw bytes of an attachment from base64 or a data URL."""
    try:
        if attachment.bytes_b64:
            return base64.b64decode(attachment.bytes_b64, validate=False)
        if attachment.data_url:
            match = _DATA_URL_RE.match(attachment.data_url)
            if not match:
                return None
            if ";base64" in match.group(2):
                return base64.b64decode(match.group(3), validate=False)
            return unquote_to_bytes(match.group(3))
    except (binascii.Error, ValueError) as e:
        logger.warning(f"[Uploads] Could not decode attachment {attachment.name!r}: {e}")
    return None


def parse_csv(data: bytes) -> Optional[Tuple[List[str], List[Dict[str, Any]]]]:
    """Headers and rows from CSV bytes; None when the bytes are not UTF-8 text."""
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return None

    reader = csv.reader(io.StringIO(text, newline=""))
    headers: Optional[List[str]] = None
    rows: List[Dict[str, Any]] = []
    try:
        for record in reader:
            if not record or all(cell.strip() == "" for cell in record):
                continue
            if headers is None:
                headers = [cell.strip() for cell in record]
                continue
            rows.append({h: (record[i] if i < len(record) else "") for i, h in enumerate(headers) if h})
    except csv.Error as e:
        logger.warning(f"[Uploads] CSV parse error: {e}")
        return None
    if headers is None:
        return None
    return headers, rows


def parse_sheet(data: bytes, codec: SheetCodec) -> Optional[Tuple[List[str], List[Dict[str, Any]]]]:
    try:
        headers, rows = codec.decode(data)
    except SheetCodecUnavailable as e:
        logger.warning(f"[Uploads] Spreadsheet decode unavailable: {e}")
        return None
    if not headers:
        return None
    return headers, rows


def parse_attachment(attachment: Attachment, codec: Optional[SheetCodec] = None) -> Optional[UploadedFile]:
    """
    Parse one attachment into an UploadedFile.

    The file name or MIME type picks the parser; without a hint, CSV is tried
    before the spreadsheet codec.
    """
    codec = codec or UnavailableSheetCodec()
    data = attachment_bytes(attachment)
    if not data:
        return None

    hint = f"{attachment.name} {attachment.mime}"
    if _XLSX_HINT_RE.search(attachment.name or "") or _XLSX_HINT_RE.search(attachment.mime or ""):
        order = ("xlsx", "csv")
    elif _CSV_HINT_RE.search(attachment.name or "") or _CSV_HINT_RE.search(attachment.mime or ""):
        order = ("csv",)
    else:
        order = ("csv", "xlsx")

    for kind in order:
        parsed = parse_csv(data) if kind == "csv" else parse_sheet(data, codec)
        if parsed is None:
            continue
        headers, rows = parsed
        logger.info(f"[Uploads] Parsed {kind} upload {attachment.name!r}: {len(rows)} rows, {len(headers)} columns")
        return UploadedFile(
            name=attachment.name or f"upload.{kind}",
            kind=kind,
            rows=rows,
            headers_original=headers,
            headers_canon=[canonical_field_name(h) for h in headers],
        )

    logger.warning(f"[Uploads] No parser accepted attachment ({hint.strip()})")
    return None


def first_tabular_upload(attachments: Sequence[Attachment], codec: Optional[SheetCodec] = None) -> Optional[UploadedFile]:
    for attachment in attachments:
        upload = parse_attachment(attachment, codec)
        if upload is not None:
            return upload
    return None

"""
Export Materializer.

Encodes an aggregation or raw row set as CSV or spreadsheet bytes with
deterministic headers, then resolves a download reference:

1. the injected link issuer, when configured
2. an inline data: URL, when the bytes fit under the inline ceiling
3. otherwise no reference; the caller must ask the user to narrow scope

Spreadsheet encoding goes through an injected SheetCodec. The default codec
is unavailable, and every export then falls back to CSV.
"""

import asyncio
import base64
import json
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import httpx

from tabular_query.core.constants import (
    CSV_MIME,
    DOWNLOAD_TTL_MS,
    INLINE_EXPORT_MAX_BYTES,
    XLSX_MIME,
)
from tabular_query.core.errors import LinkIssueError, SheetCodecUnavailable
from tabular_query.domain.models import Aggregation
from tabular_query.utils.log_utils import get_logger
from tabular_query.utils.text import slugify

logger = get_logger(__name__)


# =============================================================================
# CSV
# =============================================================================

def cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and not math.isfinite(value):
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def csv_escape(value: Any) -> str:
    """Quote only when the value holds a comma, quote or newline; double inner quotes."""
    text = cell_text(value)
    if any(ch in text for ch in (",", '"', "\n", "\r")):
        return '"' + text.replace('"', '""') + '"'
    return text


def table_to_csv(columns: Sequence[str], rows: Iterable[Sequence[Any]]) -> bytes:
    # Not csv.writer: exports carry no trailing newline, and a row whose only
    # cell is empty must stay an empty line rather than `""`.
    lines = [",".join(csv_escape(c) for c in columns)]
    lines.extend(",".join(csv_escape(cell) for cell in row) for row in rows)
    return "\n".join(lines).encode("utf-8")


def collect_headers(rows: Iterable[Dict[str, Any]], preferred: Sequence[str] = ()) -> List[str]:
    """Key union of the rows: preferred names first, the rest in encounter order."""
    seen: Dict[str, None] = {}
    for row in rows:
        for name in row.keys():
            seen.setdefault(name, None)
    head = [name for name in preferred if name in seen]
    return head + [name for name in seen if name not in head]


def rows_to_table(
    rows: List[Dict[str, Any]],
    header_order: Optional[Sequence[str]] = None,
    preferred: Sequence[str] = (),
) -> Tuple[List[str], List[List[Any]]]:
    headers = list(header_order) if header_order else collect_headers(rows, preferred)
    return headers, [[row.get(h) for h in headers] for row in rows]


def to_csv(
    rows: List[Dict[str, Any]],
    header_order: Optional[Sequence[str]] = None,
    preferred: Sequence[str] = (),
) -> bytes:
    headers, table = rows_to_table(rows, header_order, preferred)
    return table_to_csv(headers, table)


# =============================================================================
# Spreadsheet capability
# =============================================================================

class SheetCodec(Protocol):
    """Pluggable spreadsheet encode/decode."""

    def encode(self, columns: Sequence[str], rows: Sequence[Sequence[Any]]) -> bytes:
        ...

    def decode(self, data: bytes) -> Tuple[List[str], List[Dict[str, Any]]]:
        ...


class UnavailableSheetCodec:
    """Default codec: no spreadsheet support, exports fall back to CSV."""

    def encode(self, columns: Sequence[str], rows: Sequence[Sequence[Any]]) -> bytes:
        raise SheetCodecUnavailable("no spreadsheet codec configured")

    def decode(self, data: bytes) -> Tuple[List[str], List[Dict[str, Any]]]:
        raise SheetCodecUnavailable("no spreadsheet codec configured")


# =============================================================================
# Download links
# =============================================================================

class LinkIssuer(Protocol):
    async def register(self, data: bytes, filename: str, mime: str, ttl_ms: int) -> str:
        ...


class ServerLinkIssuer:
    """
    Registers bytes with the host server and returns its short-lived URL.

    POST {origin}/__ai-register  {name, mime, ttlMs, bytesB64} -> {url}
    """

    def __init__(self, origin: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self.origin = origin.rstrip("/")
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def register(self, data: bytes, filename: str, mime: str, ttl_ms: int) -> str:
        if not self.origin:
            raise LinkIssueError("no server origin configured for link registration")
        body = {
            "name": filename,
            "mime": mime,
            "ttlMs": ttl_ms,
            "bytesB64": base64.b64encode(data).decode("ascii"),
        }
        try:
            response = await self._get_client().post(f"{self.origin}/__ai-register", json=body)
            response.raise_for_status()
            url = response.json().get("url")
        except httpx.HTTPStatusError as e:
            raise LinkIssueError(f"register failed: HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            raise LinkIssueError(f"register failed: {e}") from e
        if not url:
            raise LinkIssueError("register returned no url")
        return url


def to_data_url(data: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


# =============================================================================
# Materializer
# =============================================================================

@dataclass
class ExportFile:
    filename: str
    mime: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class ExportResult:
    file: ExportFile
    url: Optional[str] = None

    @property
    def ok(self) -> bool:
        return bool(self.url)


def infer_export_name(aggregation: Aggregation) -> str:
    """Filename stem for re-exporting an aggregation."""
    if aggregation.name_hint:
        return slugify(aggregation.name_hint, fallback="aggregation")
    if aggregation.columns and aggregation.columns[0].strip().lower() == "year":
        return "grouped-by-year"
    return "aggregation"


class ExportMaterializer:
    def __init__(
        self,
        link_issuer: Optional[LinkIssuer] = None,
        sheet_codec: Optional[SheetCodec] = None,
        inline_max_bytes: int = INLINE_EXPORT_MAX_BYTES,
        ttl_ms: int = DOWNLOAD_TTL_MS,
    ):
        self.link_issuer = link_issuer
        self.sheet_codec = sheet_codec or UnavailableSheetCodec()
        self.inline_max_bytes = inline_max_bytes
        self.ttl_ms = ttl_ms

    def to_csv(self, rows: List[Dict[str, Any]], header_order: Optional[Sequence[str]] = None) -> bytes:
        return to_csv(rows, header_order)

    async def _encode_sheet(self, columns: Sequence[str], rows: Sequence[Sequence[Any]]) -> Optional[bytes]:
        try:
            return await asyncio.to_thread(self.sheet_codec.encode, list(columns), [list(r) for r in rows])
        except SheetCodecUnavailable as e:
            logger.warning(f"[ExportMaterializer] Spreadsheet encode unavailable, using CSV: {e}")
            return None

    async def to_sheet(self, rows: List[Dict[str, Any]], header_order: Optional[Sequence[str]] = None) -> bytes:
        """Spreadsheet bytes, or CSV bytes when the codec cannot encode."""
        headers, table = rows_to_table(rows, header_order)
        encoded = await self._encode_sheet(headers, table)
        return encoded if encoded is not None else table_to_csv(headers, table)

    async def build_file(
        self,
        columns: Sequence[str],
        rows: Sequence[Sequence[Any]],
        base_name: str,
        as_sheet: bool = False,
    ) -> ExportFile:
        if as_sheet:
            encoded = await self._encode_sheet(columns, rows)
            if encoded is not None:
                return ExportFile(filename=f"{base_name}.xlsx", mime=XLSX_MIME, data=encoded)
        return ExportFile(filename=f"{base_name}.csv", mime=CSV_MIME, data=table_to_csv(columns, rows))

    async def obtain_download_reference(
        self,
        data: bytes,
        filename: str,
        mime: str,
        ttl_ms: Optional[int] = None,
    ) -> Optional[str]:
        """Issued link, else inline data URL under the ceiling, else None."""
        ttl_ms = ttl_ms or self.ttl_ms
        if self.link_issuer is not None:
            try:
                return await self.link_issuer.register(data, filename, mime, ttl_ms)
            except LinkIssueError as e:
                logger.warning(f"[ExportMaterializer] Link issuer failed for {filename}, trying inline: {e}")

        if len(data) <= self.inline_max_bytes:
            return to_data_url(data, mime)

        logger.info(
            f"[ExportMaterializer] {filename} is {len(data)} bytes, over the {self.inline_max_bytes} inline ceiling"
        )
        return None

    async def export_table(
        self,
        columns: Sequence[str],
        rows: Sequence[Sequence[Any]],
        base_name: str,
        as_sheet: bool = False,
    ) -> ExportResult:
        export_file = await self.build_file(columns, rows, base_name, as_sheet)
        url = await self.obtain_download_reference(export_file.data, export_file.filename, export_file.mime)
        return ExportResult(file=export_file, url=url)

    async def export_aggregation(self, aggregation: Aggregation, base_name: str, as_sheet: bool = False) -> ExportResult:
        """Columns and rows exactly as remembered, in presentation order."""
        return await self.export_table(aggregation.columns, aggregation.rows, base_name, as_sheet)

    async def export_rows(
        self,
        rows: List[Dict[str, Any]],
        base_name: str,
        as_sheet: bool = False,
        header_order: Optional[Sequence[str]] = None,
        preferred: Sequence[str] = (),
    ) -> ExportResult:
        headers, table = rows_to_table(rows, header_order, preferred)
        return await self.export_table(headers, table, base_name, as_sheet)

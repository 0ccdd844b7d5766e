"""
Spreadsheet codec backed by pandas + openpyxl.

Inject into ExportMaterializer / upload parsing to enable .xlsx files. Any
encode or decode failure surfaces as SheetCodecUnavailable so callers fall
back to CSV.
"""

import io
import zipfile
from typing import Any, Dict, List, Sequence, Tuple

import pandas as pd
from openpyxl.utils.exceptions import IllegalCharacterError

from tabular_query.core.errors import SheetCodecUnavailable

SHEET_NAME = "export"


class PandasSheetCodec:
    """Reads the first worksheet (first row as headers) and writes a single sheet."""

    def __init__(self, sheet_name: str = SHEET_NAME):
        self.sheet_name = sheet_name

    def encode(self, columns: Sequence[str], rows: Sequence[Sequence[Any]]) -> bytes:
        frame = pd.DataFrame([list(r) for r in rows], columns=list(columns))
        buffer = io.BytesIO()
        try:
            frame.to_excel(buffer, index=False, sheet_name=self.sheet_name, engine="openpyxl")
        except (ImportError, ValueError, IllegalCharacterError) as e:
            raise SheetCodecUnavailable(f"xlsx encode failed: {e}") from e
        return buffer.getvalue()

    def decode(self, data: bytes) -> Tuple[List[str], List[Dict[str, Any]]]:
        try:
            frame = pd.read_excel(
                io.BytesIO(data),
                sheet_name=0,
                dtype=str,
                keep_default_na=False,
                engine="openpyxl",
            )
        except (ImportError, ValueError, KeyError, zipfile.BadZipFile) as e:
            raise SheetCodecUnavailable(f"xlsx decode failed: {e}") from e

        headers = [str(c).strip() for c in frame.columns]
        frame.columns = headers
        return headers, frame.to_dict(orient="records")

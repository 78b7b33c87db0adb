from io import BytesIO
from typing import Iterable, List, Tuple

from fastapi import Response
from openpyxl import Workbook
from openpyxl.utils import get_column_letter

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

# (header, key, width)
Column = Tuple[str, str, int]


def build_workbook(title: str, columns: List[Column], rows: Iterable[dict]) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = title
    ws.append([header for header, _, _ in columns])
    for idx, (_, _, width) in enumerate(columns, start=1):
        ws.column_dimensions[get_column_letter(idx)].width = width
    for row in rows:
        ws.append([row.get(key, "") for _, key, _ in columns])
    buf = BytesIO()
    wb.save(buf)
    return buf.getvalue()


def xlsx_response(content: bytes, filename: str) -> Response:
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )

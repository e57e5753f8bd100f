import csv
import io
from collections.abc import Iterable
from typing import Any

from fastapi.responses import Response
from openpyxl import Workbook

CSV_MEDIA_TYPE = "text/csv; charset=utf-8"
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _attachment_headers(filename: str) -> dict[str, str]:
    return {"Content-Disposition": f"attachment; filename={filename}"}


def _cell(value: Any) -> Any:
    # openpyxl rejects dicts and lists
    if isinstance(value, (dict, list)):
        return str(value)
    return value


def csv_attachment_response(
    *,
    filename: str,
    header: list[str],
    rows: Iterable[Iterable[Any]],
) -> Response:
    out = io.StringIO()
    writer = csv.writer(out)
    writer.writerow(header)
    for row in rows:
        writer.writerow(["" if value is None else value for value in row])
    return Response(
        content=out.getvalue(),
        media_type=CSV_MEDIA_TYPE,
        headers=_attachment_headers(filename),
    )


def xlsx_attachment_response(
    *,
    filename: str,
    sheet_name: str,
    header: list[str],
    rows: Iterable[Iterable[Any]],
) -> Response:
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_name
    ws.append(header)
    for row in rows:
        ws.append([_cell(value) for value in row])

    out = io.BytesIO()
    wb.save(out)
    return Response(
        content=out.getvalue(),
        media_type=XLSX_MEDIA_TYPE,
        headers=_attachment_headers(filename),
    )

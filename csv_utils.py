import csv
import io
from typing import Iterable, Any, Sequence, Callable, Optional
from fastapi.responses import StreamingResponse

def decode_csv_bytes(data: bytes) -> str:
    # Windowsでありがちな順に試す：UTF-8(BOM) → UTF-8 → CP932
    for enc in ("utf-8-sig", "utf-8", "cp932"):
        try:
            return data.decode(enc)
        except UnicodeDecodeError:
            continue
    # 最後の手段
    return data.decode("utf-8", errors="replace")


HEADER_ALIASES = {
    # English
    "name": "name",
    "serial_number": "serial_number",
    "serial": "serial_number",
    "serie": "serial_number",
    "description": "description",
    "brand": "brand",
    "model": "model",
    "location": "location",
    "total_quantity": "total_quantity",
    "quantity": "total_quantity",
    "total": "total_quantity",
    # Español
    "nombre": "name",
    "numero_serie": "serial_number",
    "número de serie": "serial_number",
    "descripcion": "description",
    "descripción": "description",
    "marca": "brand",
    "modelo": "model",
    "ubicacion": "location",
    "ubicación": "location",
    "cantidad": "total_quantity",
    "cantidad_total": "total_quantity",
}


def normalize_header(h: str) -> str:
    h = (h or "").strip()
    key = h.lower()
    return HEADER_ALIASES.get(h, HEADER_ALIASES.get(key, h))

def _fmt_datetime(value: Any) -> str:
    if value is not None and hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value or "")

def equipment_to_csv_response(
    items: Iterable[Any],
    *,
    filename: str = "equipment_export.csv",
    columns: Optional[Sequence[tuple[str, Callable[[Any], str]]]] = None,
) -> StreamingResponse:
    """
    items(iterable) を CSV にしてダウンロードさせる StreamingResponse を返す。
    ORM/PydanticどちらでもOK（属性アクセスできればOK）
    """

    if columns is None:
        columns = [
            ("id", lambda e: str(getattr(e, "id", ""))),
            ("name", lambda e: str(getattr(e, "name", ""))),
            ("serial_number", lambda e: str(getattr(e, "serial_number", ""))),
            ("brand", lambda e: str(getattr(e, "brand", "") or "")),
            ("model", lambda e: str(getattr(e, "model", "") or "")),
            ("location", lambda e: str(getattr(e, "location", "") or "")),
            ("total_quantity", lambda e: str(getattr(e, "total_quantity", ""))),
            ("available_quantity", lambda e: str(getattr(e, "available_quantity", ""))),
            ("status", lambda e: str(getattr(e, "status", ""))),
            ("updated_at", lambda e: _fmt_datetime(getattr(e, "updated_at", None))),
            ("description", lambda e: str(getattr(e, "description", "") or "")),
        ]

    def generate():
        buf = io.StringIO()
        w = csv.writer(buf)

        # header
        w.writerow([h for h, _ in columns])
        yield buf.getvalue()
        buf.seek(0)
        buf.truncate(0)

        # rows
        for item in items:
            w.writerow([getter(item) for _, getter in columns])
            yield buf.getvalue()
            buf.seek(0)
            buf.truncate(0)

    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return StreamingResponse(generate(), media_type="text/csv; charset=utf-8", headers=headers)

def csv_bytes_to_rows(data: bytes) -> tuple[list[dict[str, str]], str | None]:
    """
    CSVのバイト列を rows(list[dict]) に変換する。
    戻り値: (rows, error_message)
      - 成功: (rows, None)
      - 失敗: ([], "CSV header not found") など
    """
    text = decode_csv_bytes(data)
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        return [], "CSV header not found"

    field_map = {fn: normalize_header(fn) for fn in reader.fieldnames}

    rows: list[dict[str, str]] = []
    for raw in reader:
        row: dict[str, str] = {}
        for k, v in raw.items():
            nk = field_map.get(k, k)
            row[nk] = v if v is not None else ""
        rows.append(row)

    return rows, None

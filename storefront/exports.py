from __future__ import annotations

import io
from typing import Dict, List, Sequence

import pandas as pd


BOM = "\ufeff"


def csv_escape(v, sep: str = ",") -> str:
    if v is None:
        s = ""
    else:
        s = str(v)
    if any(ch in s for ch in [sep, "\n", "\r", '"']):
        s = '"' + s.replace('"', '""') + '"'
    return s


def to_csv(columns: Sequence[str], rows: Sequence[Sequence], sep: str = ",", bom: bool = False) -> str:
    out = [sep.join([csv_escape(c, sep) for c in columns])]
    for r in rows:
        out.append(sep.join([csv_escape(x, sep) for x in r]))
    text = "\n".join(out) + "\n"
    return (BOM + text) if bom else text


def to_xlsx(sheets: Dict[str, pd.DataFrame]) -> bytes:
    buf = io.BytesIO()
    with pd.ExcelWriter(buf, engine="openpyxl") as writer:
        for name, df in sheets.items():
            df.to_excel(writer, sheet_name=name[:31], index=False)
            ws = writer.sheets[name[:31]]
            for idx, col in enumerate(df.columns, start=1):
                values: List[str] = [str(col)] + [str(v) for v in df[col].head(200).tolist()]
                width = min(60, max(8, max(len(v) for v in values) + 2))
                ws.column_dimensions[ws.cell(row=1, column=idx).column_letter].width = width
    return buf.getvalue()

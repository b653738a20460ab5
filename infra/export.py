from __future__ import annotations
import io
from typing import Iterable

import pandas as pd

from logic.modelos import LineaExtracto

COLUMNAS_FECHA = ("Fecha", "Fecha valor", "Fecha conciliación", "Fecha descarte")


def lineas_a_dataframe(lineas: Iterable[LineaExtracto]) -> pd.DataFrame:
    filas = [
        {
            "Nº línea": l.numero_linea,
            "Fecha": l.fecha,
            "Fecha valor": l.fecha_valor,
            "Concepto": l.concepto,
            "Tipo": l.tipo.value,
            "Importe": float(l.importe),
            "Saldo": float(l.saldo) if l.saldo is not None else None,
            "Referencia": l.referencia_banco or "",
            "Estado": l.estado.value,
            "Movimiento tesorería": l.movimiento_id,
            "Confianza": l.confianza,
            "Motivo": l.motivo or "",
            "Criterios": ", ".join(l.criterios),
            "Conciliado por": l.conciliado_por or "",
            # openpyxl no escribe datetimes con zona horaria
            "Fecha conciliación": l.fecha_conciliacion.replace(tzinfo=None) if l.fecha_conciliacion else None,
            "Descartado por": l.descartado_por or "",
            "Fecha descarte": l.fecha_descarte.replace(tzinfo=None) if l.fecha_descarte else None,
            "Motivo descarte": l.motivo_descarte or "",
        }
        for l in lineas
    ]
    df = pd.DataFrame(filas, columns=[
        "Nº línea", "Fecha", "Fecha valor", "Concepto", "Tipo", "Importe", "Saldo",
        "Referencia", "Estado", "Movimiento tesorería", "Confianza", "Motivo", "Criterios",
        "Conciliado por", "Fecha conciliación", "Descartado por", "Fecha descarte", "Motivo descarte",
    ])
    for col in COLUMNAS_FECHA:
        df[col] = pd.to_datetime(df[col], errors="coerce")
    return df


def dataframe_a_excel_bytes(
    df: pd.DataFrame,
    sheet_name: str = "Conciliacion",
    formato_columnas_fecha: dict[str, str] | None = None
) -> bytes:
    """
    Exporta un DataFrame a Excel conservando los tipos fecha (no texto).
    Si se pasa `formato_columnas_fecha` con {nombre_columna: "DD/MM/YYYY"}, aplica number_format.
    """
    buff = io.BytesIO()
    with pd.ExcelWriter(buff, engine="openpyxl") as writer:
        df.to_excel(writer, index=False, sheet_name=sheet_name)
        if formato_columnas_fecha:
            ws = writer.sheets[sheet_name]
            headers = [c.value for c in ws[1]]
            for col_name, fmt in formato_columnas_fecha.items():
                if col_name in headers:
                    col_idx = headers.index(col_name) + 1
                    for (cell,) in ws.iter_rows(min_row=2, min_col=col_idx, max_col=col_idx):
                        cell.number_format = fmt
    return buff.getvalue()


def lineas_a_excel_bytes(lineas: Iterable[LineaExtracto], sheet_name: str = "Extracto") -> bytes:
    formatos = {col: "DD/MM/YYYY" for col in ("Fecha", "Fecha valor", "Fecha descarte")}
    formatos["Fecha conciliación"] = "DD/MM/YYYY HH:MM"
    return dataframe_a_excel_bytes(lineas_a_dataframe(lineas), sheet_name, formatos)

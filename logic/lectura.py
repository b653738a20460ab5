from __future__ import annotations

import hashlib
import math
import re
import unicodedata
from dataclasses import dataclass
from decimal import Decimal
from numbers import Integral, Real

import pandas as pd

from infra.config import LecturaConfig
from logic.errores import ValidacionError
from logic.modelos import FormatoOrigen, LineaParseada, TipoMovimiento

LARGO_CONCEPTO = 200
_SIMBOLOS_NO_VALIDOS = re.compile(r"[^\w\s\-.,€$]", re.UNICODE)


def _sanitize_header(value: str) -> str:
    lowered = str(value).lower()
    replacements = {
        "cr?dito": "credito",
        "d?bito": "debito",
        "crÃ©dito": "credito",
        "dÃ©bito": "debito",
        "descripciÃ³n": "descripcion",
        "operaciÃ³n": "operacion",
    }
    for wrong, corrected in replacements.items():
        if wrong in lowered:
            lowered = lowered.replace(wrong, corrected)
    normalized = unicodedata.normalize("NFKD", lowered)
    return "".join(ch for ch in normalized if not unicodedata.combining(ch)).strip()


@dataclass(frozen=True)
class ColumnasExtracto:
    fecha: str | None = None
    fecha_valor: str | None = None
    concepto: str | None = None
    importe: str | None = None
    cargo: str | None = None
    abono: str | None = None
    saldo: str | None = None
    referencia: str | None = None

    @property
    def modo(self) -> str | None:
        """"Importe único", "Cargo/Abono" o None si no hay columnas de importe."""
        if self.importe:
            return "Importe único"
        if self.cargo and self.abono:
            return "Cargo/Abono"
        return None


def detectar_columnas(df: pd.DataFrame, cfg: LecturaConfig = LecturaConfig()) -> ColumnasExtracto:
    """Asigna columnas del DataFrame por palabras clave del encabezado."""
    cols = list(df.columns)
    sanitized = [_sanitize_header(c) for c in cols]
    usadas: set[str] = set()

    def pick(keywords, exacta=False):
        for kw in keywords:
            kw_clean = _sanitize_header(kw)
            for original, clean in zip(cols, sanitized):
                if original in usadas:
                    continue
                if clean == kw_clean or (not exacta and kw_clean in clean):
                    usadas.add(original)
                    return original
        return None

    # "fecha valor" antes que "fecha" para que no se la quede la fecha de operacion
    fecha_valor = pick(cfg.columnas_fecha_valor)
    fecha = pick(cfg.columnas_fecha, exacta=True) or pick(cfg.columnas_fecha)
    return ColumnasExtracto(
        fecha=fecha,
        fecha_valor=fecha_valor,
        importe=pick(cfg.columnas_importe),
        cargo=pick(cfg.columnas_cargo),
        abono=pick(cfg.columnas_abono),
        saldo=pick(cfg.columnas_saldo),
        referencia=pick(cfg.columnas_referencia),
        concepto=pick(cfg.columnas_concepto),
    )


def limpiar_importe_serie(serie: pd.Series) -> pd.Series:
    """Texto de importes a float. Con coma decimal, los puntos son separador de miles."""
    s = serie.astype(str).str.replace(r"[^0-9,.\-]", "", regex=True)
    con_coma = s.str.contains(",", regex=False)
    s = s.where(~con_coma, s.str.replace(".", "", regex=False).str.replace(",", ".", regex=False))
    return pd.to_numeric(s, errors="coerce")


def calcular_importe_final(df: pd.DataFrame, columnas: ColumnasExtracto) -> pd.Series:
    """Importe con signo: positivo abono, negativo cargo."""
    if columnas.importe:
        return limpiar_importe_serie(df[columnas.importe]).round(2)
    if columnas.cargo and columnas.abono:
        cargo = limpiar_importe_serie(df[columnas.cargo]).fillna(0).abs()
        abono = limpiar_importe_serie(df[columnas.abono]).fillna(0).abs()
        return (abono - cargo).round(2)
    raise ValidacionError("El archivo debe tener columna de Importe o columnas de Cargo y Abono")


def _normalizar_texto(valor) -> str:
    """Devuelve siempre texto sin sufijos `.0` cuando provienen de números."""
    if valor is None or (not isinstance(valor, str) and pd.isna(valor)):
        return ""
    if isinstance(valor, str):
        return valor
    if isinstance(valor, Integral):
        return str(int(valor))
    if isinstance(valor, Real):
        numero = float(valor)
        if math.isfinite(numero) and numero.is_integer():
            return str(int(numero))
        return str(valor)
    return str(valor)


def limpiar_concepto(texto: str) -> str:
    texto = re.sub(r"\s+", " ", texto or "")
    texto = _SIMBOLOS_NO_VALIDOS.sub("", texto)
    return texto.strip()[:LARGO_CONCEPTO]


def _a_fechas(serie: pd.Series) -> pd.Series:
    if pd.api.types.is_datetime64_any_dtype(serie):
        return serie.dt.floor("d")
    return pd.to_datetime(serie, errors="coerce", dayfirst=True).dt.floor("d")


def _a_decimal(valor) -> Decimal | None:
    if valor is None or pd.isna(valor):
        return None
    return Decimal(str(round(float(valor), 2))).quantize(Decimal("0.01"))


def normalizar_df(df_raw: pd.DataFrame, cfg: LecturaConfig = LecturaConfig()) -> list[LineaParseada]:
    """Convierte las filas de un extracto tabular en ``LineaParseada``.

    Las filas sin fecha, con importe no numerico o con importe cero se omiten.
    """
    columnas = detectar_columnas(df_raw, cfg)
    if not columnas.fecha:
        raise ValidacionError("No se encontro la columna de fecha")

    df = df_raw.copy()
    fechas = _a_fechas(df[columnas.fecha])
    importes = calcular_importe_final(df, columnas)
    vacio = pd.Series([None] * len(df), index=df.index)
    fechas_valor = _a_fechas(df[columnas.fecha_valor]) if columnas.fecha_valor else vacio
    conceptos = df[columnas.concepto].map(_normalizar_texto) if columnas.concepto else vacio.map(_normalizar_texto)
    saldos = limpiar_importe_serie(df[columnas.saldo]) if columnas.saldo else vacio
    referencias = df[columnas.referencia].map(_normalizar_texto) if columnas.referencia else vacio.map(_normalizar_texto)

    out: list[LineaParseada] = []
    for f, imp, fv, concepto, saldo, ref in zip(fechas, importes, fechas_valor, conceptos, saldos, referencias):
        if pd.isna(f) or pd.isna(imp) or float(imp) == 0.0:
            continue
        out.append(LineaParseada(
            fecha=f.date(),
            concepto=limpiar_concepto(concepto),
            concepto_original=concepto.strip(),
            importe=abs(_a_decimal(imp)),
            tipo=TipoMovimiento.CARGO if float(imp) < 0 else TipoMovimiento.ABONO,
            fecha_valor=None if fv is None or pd.isna(fv) else fv.date(),
            saldo=_a_decimal(saldo),
            referencia_banco=ref.strip() or None,
        ))
    return out


# ==========================================================
# Archivo de origen
# ==========================================================
def _a_texto(contenido: bytes | str) -> str:
    if isinstance(contenido, bytes):
        try:
            return contenido.decode("utf-8-sig")
        except UnicodeDecodeError:
            # Norma 43 suele venir en latin-1
            return contenido.decode("latin-1")
    return contenido


def detectar_formato(contenido: bytes | str) -> FormatoOrigen:
    """Etiqueta de formato del archivo a partir de su contenido."""
    texto = _a_texto(contenido).lstrip("\ufeff")
    primera_linea = texto.split("\n", 1)[0]
    # registros Norma 43: cabecera de cuenta (11) o de fichero (00)
    if primera_linea.startswith("11") or primera_linea.startswith("00"):
        return FormatoOrigen.NORMA43
    cabecera = texto[:2000].upper()
    if "OFXHEADER" in cabecera or "<OFX>" in cabecera:
        return FormatoOrigen.QFX if "<INTU." in cabecera else FormatoOrigen.OFX
    return FormatoOrigen.CSV


def calcular_hash(contenido: bytes | str) -> str:
    datos = contenido.encode("utf-8") if isinstance(contenido, str) else contenido
    return hashlib.md5(datos).hexdigest()

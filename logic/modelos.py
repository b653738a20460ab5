from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Generic, Optional, TypeVar

from logic.errores import EstadoInvalidoError


class TipoMovimiento(str, Enum):
    CARGO = "CARGO"      # salida de la cuenta (debito)
    ABONO = "ABONO"      # entrada en la cuenta (credito)


class FormatoOrigen(str, Enum):
    CSV = "CSV"
    NORMA43 = "NORMA43"
    OFX = "OFX"
    QFX = "QFX"


class EstadoExtracto(str, Enum):
    PENDIENTE = "PENDIENTE"
    SUGERIDO = "SUGERIDO"
    CONCILIADO = "CONCILIADO"
    DESCARTADO = "DESCARTADO"


class EstadoImportacion(str, Enum):
    EN_PROCESO = "EN_PROCESO"
    COMPLETADA = "COMPLETADA"
    CANCELADA = "CANCELADA"
    ERROR = "ERROR"


# ==========================================================
# Maquina de estados de la linea de extracto
# ==========================================================
TRANSICIONES: dict[EstadoExtracto, frozenset[EstadoExtracto]] = {
    EstadoExtracto.PENDIENTE: frozenset({
        EstadoExtracto.SUGERIDO,
        EstadoExtracto.CONCILIADO,
        EstadoExtracto.DESCARTADO,
    }),
    EstadoExtracto.SUGERIDO: frozenset({
        EstadoExtracto.CONCILIADO,
        EstadoExtracto.PENDIENTE,
        EstadoExtracto.DESCARTADO,
    }),
    EstadoExtracto.CONCILIADO: frozenset(),
    EstadoExtracto.DESCARTADO: frozenset(),
}

_faltantes = set(EstadoExtracto) - set(TRANSICIONES)
if _faltantes:
    raise RuntimeError(f"Tabla de transiciones incompleta: {sorted(e.value for e in _faltantes)}")
del _faltantes

ESTADOS_TERMINALES_LINEA = frozenset(e for e, destinos in TRANSICIONES.items() if not destinos)
ESTADOS_TERMINALES_IMPORTACION = frozenset({
    EstadoImportacion.COMPLETADA,
    EstadoImportacion.CANCELADA,
    EstadoImportacion.ERROR,
})
# Una importacion en estos estados no bloquea reimportar el mismo archivo
ESTADOS_SIN_DUPLICADO = frozenset({EstadoImportacion.CANCELADA, EstadoImportacion.ERROR})


def puede_transicionar(actual: EstadoExtracto, destino: EstadoExtracto) -> bool:
    return destino in TRANSICIONES[actual]


def validar_transicion(actual: EstadoExtracto, destino: EstadoExtracto) -> None:
    if not puede_transicionar(actual, destino):
        raise EstadoInvalidoError(actual, destino)


def etiqueta_confianza(confianza: int) -> str:
    if confianza >= 90:
        return "Match muy probable"
    if confianza >= 75:
        return "Match probable"
    if confianza >= 60:
        return "Match posible"
    return "Match improbable"


def tasa_conciliacion(conciliados: int, total: int) -> int:
    """Porcentaje entero de lineas conciliadas."""
    if total <= 0:
        return 0
    return round(conciliados * 100 / total)


# ==========================================================
# Entradas
# ==========================================================
@dataclass(frozen=True)
class LineaParseada:
    """Movimiento normalizado por el parser del formato de origen."""
    fecha: date
    concepto: str
    importe: Decimal            # magnitud, sin signo
    tipo: TipoMovimiento
    concepto_original: str = ""
    fecha_valor: Optional[date] = None
    saldo: Optional[Decimal] = None
    referencia_banco: Optional[str] = None
    codigo_operacion: Optional[str] = None


@dataclass(frozen=True)
class MetaImportacion:
    cuenta_id: int
    hash_archivo: str
    formato: FormatoOrigen
    creado_por: str
    nombre_archivo: str = ""
    tamano_archivo: int = 0
    cuenta_nombre: str = ""
    fecha_inicio: Optional[date] = None
    fecha_fin: Optional[date] = None
    saldo_inicial: Optional[Decimal] = None
    saldo_final: Optional[Decimal] = None


# ==========================================================
# Vistas
# ==========================================================
@dataclass(frozen=True)
class MovimientoTesoreria:
    """Movimiento interno de tesoreria (propiedad del subsistema de tesoreria)."""
    id: int
    cuenta_id: int
    tipo: TipoMovimiento
    fecha: date
    importe: Decimal
    concepto: Optional[str] = None
    referencia: Optional[str] = None
    documento_numero: Optional[str] = None
    tercero_nombre: Optional[str] = None
    conciliado: bool = False


@dataclass(frozen=True)
class Propuesta:
    movimiento_id: int
    confianza: int
    motivo: str
    criterios: tuple[str, ...]
    distancia_dias: int


@dataclass(frozen=True)
class Contadores:
    total: int = 0
    pendientes: int = 0
    sugeridos: int = 0
    conciliados: int = 0
    descartados: int = 0

    @property
    def tasa_conciliacion(self) -> int:
        return tasa_conciliacion(self.conciliados, self.total)

    def consistente(self) -> bool:
        return self.pendientes + self.sugeridos + self.conciliados + self.descartados == self.total


@dataclass(frozen=True)
class LineaExtracto:
    id: int
    importacion_id: int
    numero_linea: int
    cuenta_id: int
    tipo: TipoMovimiento
    fecha: date
    concepto: str
    concepto_original: str
    importe: Decimal
    estado: EstadoExtracto
    fecha_valor: Optional[date] = None
    saldo: Optional[Decimal] = None
    referencia_banco: Optional[str] = None
    codigo_operacion: Optional[str] = None
    movimiento_id: Optional[int] = None
    confianza: Optional[int] = None
    motivo: Optional[str] = None
    criterios: tuple[str, ...] = ()
    conciliado_por: Optional[str] = None
    fecha_conciliacion: Optional[datetime] = None
    descartado_por: Optional[str] = None
    fecha_descarte: Optional[datetime] = None
    motivo_descarte: Optional[str] = None

    @property
    def resuelta(self) -> bool:
        return self.estado in ESTADOS_TERMINALES_LINEA


@dataclass(frozen=True)
class ImportacionExtracto:
    id: int
    cuenta_id: int
    hash_archivo: str
    formato: FormatoOrigen
    estado: EstadoImportacion
    contadores: Contadores
    creado_por: str
    fecha_creacion: datetime
    nombre_archivo: str = ""
    tamano_archivo: int = 0
    cuenta_nombre: str = ""
    fecha_inicio: Optional[date] = None
    fecha_fin: Optional[date] = None
    saldo_inicial: Optional[Decimal] = None
    saldo_final: Optional[Decimal] = None
    mensaje_error: Optional[str] = None
    finalizado_por: Optional[str] = None
    fecha_finalizacion: Optional[datetime] = None

    @property
    def esta_abierta(self) -> bool:
        return self.estado is EstadoImportacion.EN_PROCESO

    @property
    def tasa_conciliacion(self) -> int:
        return self.contadores.tasa_conciliacion


@dataclass(frozen=True)
class EventoLinea:
    id: int
    linea_id: int
    importacion_id: int
    transicion: str
    estado_anterior: EstadoExtracto
    estado_nuevo: EstadoExtracto
    fecha: datetime
    movimiento_id: Optional[int] = None
    confianza: Optional[int] = None
    motivo: Optional[str] = None
    criterios: tuple[str, ...] = ()
    actor: Optional[str] = None
    detalle: Optional[str] = None


T = TypeVar("T")


@dataclass(frozen=True)
class Pagina(Generic[T]):
    elementos: list[T] = field(default_factory=list)
    total: int = 0
    pagina: int = 1
    limite: int = 50

    @property
    def total_paginas(self) -> int:
        if self.limite <= 0:
            return 0
        return -(-self.total // self.limite)

"""Acceso a los movimientos internos de tesoreria.

La conciliacion no crea ni borra movimientos de tesoreria: solo lee sus datos
comparables y los reclama de forma atomica al aprobar una conciliacion.
``PasarelaMovimientos`` es el contrato; ``PasarelaMovimientosSQL`` lo implementa
sobre la misma base que el almacen de lineas, de modo que el reclamo y la
transicion de la linea viajan en una sola transaccion.
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Protocol

from sqlalchemy import Boolean, Enum as SAEnum, Integer, String, select, update
from sqlalchemy.orm import Mapped, Session, mapped_column

from infra.orm import Base
from infra.repositorio import ahora
from logic.errores import ConflictoError, NoEncontradoError
from logic.modelos import MovimientoTesoreria, TipoMovimiento


class PasarelaMovimientos(Protocol):
    # False si el reclamo no participa en la transaccion del almacen de lineas
    comparte_transaccion: bool

    def buscar(
        self,
        sesion: Session,
        *,
        cuenta_id: int,
        tipo: TipoMovimiento,
        importe_min: Decimal,
        importe_max: Decimal,
        desde: date,
        hasta: date,
        limite: int | None = None,
    ) -> list[MovimientoTesoreria]:
        """Movimientos no conciliados ni anulados, ordenados por fecha e id."""
        ...

    def obtener(self, sesion: Session, movimiento_id: int) -> MovimientoTesoreria | None:
        ...

    def reclamar(self, sesion: Session, movimiento_id: int, linea_id: int) -> None:
        """Marca el movimiento como conciliado solo si nadie lo reclamo antes.

        Lanza ``ConflictoError`` si ya estaba conciliado.
        """
        ...

    def liberar(self, sesion: Session, movimiento_id: int, linea_id: int) -> None:
        """Deshace un reclamo de ``linea_id`` (compensacion en dos fases)."""
        ...


# ==========================================================
# Implementacion SQL
# ==========================================================
class TipoTesoreria(str, Enum):
    ENTRADA = "ENTRADA"
    SALIDA = "SALIDA"


_A_TESORERIA = {TipoMovimiento.ABONO: TipoTesoreria.ENTRADA, TipoMovimiento.CARGO: TipoTesoreria.SALIDA}
_A_EXTRACTO = {v: k for k, v in _A_TESORERIA.items()}


def tipo_tesoreria(tipo: TipoMovimiento) -> TipoTesoreria:
    """Un abono del extracto es una entrada en tesoreria; un cargo, una salida."""
    return _A_TESORERIA[tipo]


class MovimientoTesoreriaORM(Base):
    __tablename__ = "movimientos_tesoreria"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cuenta_id: Mapped[int] = mapped_column(Integer, index=True)
    tipo: Mapped[TipoTesoreria] = mapped_column(SAEnum(TipoTesoreria, native_enum=False, length=10))
    fecha: Mapped[date]
    importe: Mapped[Decimal]
    concepto: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    referencia_bancaria: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    documento_origen_numero: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    tercero_nombre: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    conciliado: Mapped[bool] = mapped_column(Boolean, default=False)
    anulado: Mapped[bool] = mapped_column(Boolean, default=False)
    linea_extracto_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    fecha_conciliacion: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    def to_dto(self) -> MovimientoTesoreria:
        return MovimientoTesoreria(
            id=self.id,
            cuenta_id=self.cuenta_id,
            tipo=_A_EXTRACTO[self.tipo],
            fecha=self.fecha,
            importe=self.importe,
            concepto=self.concepto,
            referencia=self.referencia_bancaria,
            documento_numero=self.documento_origen_numero,
            tercero_nombre=self.tercero_nombre,
            conciliado=self.conciliado,
        )


class PasarelaMovimientosSQL:
    comparte_transaccion = True

    def buscar(self, sesion, *, cuenta_id, tipo, importe_min, importe_max, desde, hasta, limite=None):
        stmt = (
            select(MovimientoTesoreriaORM)
            .where(
                MovimientoTesoreriaORM.cuenta_id == cuenta_id,
                MovimientoTesoreriaORM.tipo == tipo_tesoreria(tipo),
                MovimientoTesoreriaORM.importe >= importe_min,
                MovimientoTesoreriaORM.importe <= importe_max,
                MovimientoTesoreriaORM.fecha >= desde,
                MovimientoTesoreriaORM.fecha <= hasta,
                MovimientoTesoreriaORM.conciliado.is_(False),
                MovimientoTesoreriaORM.anulado.is_(False),
            )
            .order_by(MovimientoTesoreriaORM.fecha, MovimientoTesoreriaORM.id)
        )
        if limite is not None:
            stmt = stmt.limit(limite)
        return [m.to_dto() for m in sesion.scalars(stmt)]

    def obtener(self, sesion, movimiento_id):
        mov = sesion.get(MovimientoTesoreriaORM, movimiento_id, populate_existing=True)
        if mov is None or mov.anulado:
            return None
        return mov.to_dto()

    def reclamar(self, sesion, movimiento_id, linea_id):
        stmt = (
            update(MovimientoTesoreriaORM)
            .where(
                MovimientoTesoreriaORM.id == movimiento_id,
                MovimientoTesoreriaORM.conciliado.is_(False),
                MovimientoTesoreriaORM.anulado.is_(False),
            )
            .values(conciliado=True, linea_extracto_id=linea_id, fecha_conciliacion=ahora())
            .execution_options(synchronize_session=False)
        )
        if sesion.execute(stmt).rowcount == 1:
            return
        if self.obtener(sesion, movimiento_id) is None:
            raise NoEncontradoError("Movimiento de tesoreria", movimiento_id)
        raise ConflictoError(movimiento_id)

    def liberar(self, sesion, movimiento_id, linea_id):
        stmt = (
            update(MovimientoTesoreriaORM)
            .where(
                MovimientoTesoreriaORM.id == movimiento_id,
                MovimientoTesoreriaORM.linea_extracto_id == linea_id,
            )
            .values(conciliado=False, linea_extracto_id=None, fecha_conciliacion=None)
            .execution_options(synchronize_session=False)
        )
        sesion.execute(stmt)

    def alta(
        self,
        sesion: Session,
        *,
        cuenta_id: int,
        tipo: TipoMovimiento,
        fecha: date,
        importe: Decimal,
        concepto: str | None = None,
        referencia: str | None = None,
        documento_numero: str | None = None,
        tercero_nombre: str | None = None,
    ) -> MovimientoTesoreria:
        """Registra un movimiento; en produccion lo hace el subsistema de tesoreria."""
        mov = MovimientoTesoreriaORM(
            cuenta_id=cuenta_id,
            tipo=tipo_tesoreria(tipo),
            fecha=fecha,
            importe=Decimal(str(importe)),
            concepto=concepto,
            referencia_bancaria=referencia,
            documento_origen_numero=documento_numero,
            tercero_nombre=tercero_nombre,
            conciliado=False,
            anulado=False,
        )
        sesion.add(mov)
        sesion.flush()
        return mov.to_dto()

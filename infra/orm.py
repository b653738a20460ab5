"""Tablas del almacen de importaciones y lineas de extracto.

Cada modelo expone ``to_dto()`` hacia las dataclasses congeladas de
``logic.modelos``; fuera de ``infra`` no circulan objetos ORM.
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import ClassVar, Optional

from sqlalchemy import (
    JSON, Date, DateTime, Enum as SAEnum, ForeignKey, Index, Integer, Numeric,
    String, Text, UniqueConstraint, text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from logic.modelos import (
    Contadores, EstadoExtracto, EstadoImportacion, EventoLinea, FormatoOrigen,
    ImportacionExtracto, LineaExtracto, TipoMovimiento,
)


def _enum(tipo) -> SAEnum:
    return SAEnum(tipo, native_enum=False, length=20, validate_strings=True)


class Base(DeclarativeBase):
    type_annotation_map: ClassVar[dict] = {
        # importes con dos decimales; nunca float
        Decimal: Numeric(14, 2),
        datetime: DateTime(timezone=True),
        date: Date,
        str: String(255),
    }


class ImportacionExtractoORM(Base):
    __tablename__ = "importaciones_extracto"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cuenta_id: Mapped[int] = mapped_column(Integer, index=True)
    cuenta_nombre: Mapped[str] = mapped_column(String(200), default="")
    nombre_archivo: Mapped[str] = mapped_column(default="")
    tamano_archivo: Mapped[int] = mapped_column(Integer, default=0)
    formato: Mapped[FormatoOrigen] = mapped_column(_enum(FormatoOrigen))
    hash_archivo: Mapped[str] = mapped_column(String(64))
    # "<cuenta>:<hash>" mientras la importacion bloquea reimportar el archivo
    clave_duplicado: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)

    fecha_inicio: Mapped[Optional[date]] = mapped_column(nullable=True)
    fecha_fin: Mapped[Optional[date]] = mapped_column(nullable=True)
    saldo_inicial: Mapped[Optional[Decimal]] = mapped_column(nullable=True)
    saldo_final: Mapped[Optional[Decimal]] = mapped_column(nullable=True)

    total: Mapped[int] = mapped_column(Integer, default=0)
    pendientes: Mapped[int] = mapped_column(Integer, default=0)
    sugeridos: Mapped[int] = mapped_column(Integer, default=0)
    conciliados: Mapped[int] = mapped_column(Integer, default=0)
    descartados: Mapped[int] = mapped_column(Integer, default=0)

    estado: Mapped[EstadoImportacion] = mapped_column(
        _enum(EstadoImportacion), default=EstadoImportacion.EN_PROCESO,
    )
    mensaje_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    creado_por: Mapped[str] = mapped_column(String(100))
    fecha_creacion: Mapped[datetime]
    finalizado_por: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    fecha_finalizacion: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint("clave_duplicado", name="uq_importaciones_clave_duplicado"),
        Index("idx_importaciones_hash", "cuenta_id", "hash_archivo"),
    )

    def to_dto(self) -> ImportacionExtracto:
        return ImportacionExtracto(
            id=self.id,
            cuenta_id=self.cuenta_id,
            hash_archivo=self.hash_archivo,
            formato=self.formato,
            estado=self.estado,
            contadores=Contadores(
                total=self.total,
                pendientes=self.pendientes,
                sugeridos=self.sugeridos,
                conciliados=self.conciliados,
                descartados=self.descartados,
            ),
            creado_por=self.creado_por,
            fecha_creacion=self.fecha_creacion,
            nombre_archivo=self.nombre_archivo,
            tamano_archivo=self.tamano_archivo,
            cuenta_nombre=self.cuenta_nombre,
            fecha_inicio=self.fecha_inicio,
            fecha_fin=self.fecha_fin,
            saldo_inicial=self.saldo_inicial,
            saldo_final=self.saldo_final,
            mensaje_error=self.mensaje_error,
            finalizado_por=self.finalizado_por,
            fecha_finalizacion=self.fecha_finalizacion,
        )


class LineaExtractoORM(Base):
    __tablename__ = "lineas_extracto"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    importacion_id: Mapped[int] = mapped_column(ForeignKey("importaciones_extracto.id"))
    numero_linea: Mapped[int] = mapped_column(Integer)
    cuenta_id: Mapped[int] = mapped_column(Integer)
    tipo: Mapped[TipoMovimiento] = mapped_column(_enum(TipoMovimiento))
    fecha: Mapped[date]
    fecha_valor: Mapped[Optional[date]] = mapped_column(nullable=True)
    concepto: Mapped[str] = mapped_column(String(200), default="")
    concepto_original: Mapped[str] = mapped_column(Text, default="")
    importe: Mapped[Decimal]
    saldo: Mapped[Optional[Decimal]] = mapped_column(nullable=True)
    referencia_banco: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    codigo_operacion: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    estado: Mapped[EstadoExtracto] = mapped_column(
        _enum(EstadoExtracto), default=EstadoExtracto.PENDIENTE,
    )
    movimiento_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    confianza: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    motivo: Mapped[Optional[str]] = mapped_column(nullable=True)
    criterios: Mapped[Optional[list]] = mapped_column(JSON(none_as_null=True), nullable=True)

    conciliado_por: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    fecha_conciliacion: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    descartado_por: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    fecha_descarte: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    motivo_descarte: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("importacion_id", "numero_linea", name="uq_lineas_importacion_numero"),
        Index("idx_lineas_importacion_estado", "importacion_id", "estado"),
        # Un movimiento de tesoreria solo puede quedar conciliado con una linea
        Index(
            "uq_lineas_movimiento_conciliado", "movimiento_id",
            unique=True,
            sqlite_where=text("estado = 'CONCILIADO'"),
            postgresql_where=text("estado = 'CONCILIADO'"),
        ),
    )

    def to_dto(self) -> LineaExtracto:
        return LineaExtracto(
            id=self.id,
            importacion_id=self.importacion_id,
            numero_linea=self.numero_linea,
            cuenta_id=self.cuenta_id,
            tipo=self.tipo,
            fecha=self.fecha,
            concepto=self.concepto,
            concepto_original=self.concepto_original,
            importe=self.importe,
            estado=self.estado,
            fecha_valor=self.fecha_valor,
            saldo=self.saldo,
            referencia_banco=self.referencia_banco,
            codigo_operacion=self.codigo_operacion,
            movimiento_id=self.movimiento_id,
            confianza=self.confianza,
            motivo=self.motivo,
            criterios=tuple(self.criterios or ()),
            conciliado_por=self.conciliado_por,
            fecha_conciliacion=self.fecha_conciliacion,
            descartado_por=self.descartado_por,
            fecha_descarte=self.fecha_descarte,
            motivo_descarte=self.motivo_descarte,
        )


class EventoLineaORM(Base):
    """Historial inmutable de transiciones de cada linea."""

    __tablename__ = "eventos_linea"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    linea_id: Mapped[int] = mapped_column(ForeignKey("lineas_extracto.id"), index=True)
    importacion_id: Mapped[int] = mapped_column(Integer, index=True)
    transicion: Mapped[str] = mapped_column(String(30))
    estado_anterior: Mapped[EstadoExtracto] = mapped_column(_enum(EstadoExtracto))
    estado_nuevo: Mapped[EstadoExtracto] = mapped_column(_enum(EstadoExtracto))
    movimiento_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    confianza: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    motivo: Mapped[Optional[str]] = mapped_column(nullable=True)
    criterios: Mapped[Optional[list]] = mapped_column(JSON(none_as_null=True), nullable=True)
    actor: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    detalle: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fecha: Mapped[datetime]

    def to_dto(self) -> EventoLinea:
        return EventoLinea(
            id=self.id,
            linea_id=self.linea_id,
            importacion_id=self.importacion_id,
            transicion=self.transicion,
            estado_anterior=self.estado_anterior,
            estado_nuevo=self.estado_nuevo,
            fecha=self.fecha,
            movimiento_id=self.movimiento_id,
            confianza=self.confianza,
            motivo=self.motivo,
            criterios=tuple(self.criterios or ()),
            actor=self.actor,
            detalle=self.detalle,
        )

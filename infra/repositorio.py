"""Almacen de importaciones y lineas de extracto.

Todas las funciones reciben la ``Session`` de la unidad de trabajo en curso; el
commit o rollback lo decide quien abrio la transaccion.
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from logic.errores import (
    EstadoInvalidoError, IngestaError, InvarianteLineaError, NoEncontradoError,
)
from logic.modelos import (
    Contadores, EstadoExtracto, EstadoImportacion, LineaParseada, MetaImportacion,
    validar_transicion,
)
from infra.orm import EventoLineaORM, ImportacionExtractoORM, LineaExtractoORM


def ahora() -> datetime:
    return datetime.now(timezone.utc)


def clave_duplicado(cuenta_id: Any, hash_archivo: str) -> str:
    return f"{cuenta_id}:{hash_archivo}"


# ==========================================================
# Invariantes de linea
# ==========================================================
def verificar_invariantes(linea: LineaExtractoORM) -> None:
    if linea.importe is None or linea.importe < 0:
        raise InvarianteLineaError(linea.id, "el importe debe ser >= 0")
    if linea.confianza is not None and not 0 <= linea.confianza <= 100:
        raise InvarianteLineaError(linea.id, f"confianza fuera de rango: {linea.confianza}")
    if linea.estado in (EstadoExtracto.SUGERIDO, EstadoExtracto.CONCILIADO) and linea.movimiento_id is None:
        raise InvarianteLineaError(linea.id, f"una linea {linea.estado.value} requiere movimiento de tesoreria")
    if linea.estado is EstadoExtracto.CONCILIADO and (not linea.conciliado_por or linea.fecha_conciliacion is None):
        raise InvarianteLineaError(linea.id, "una linea conciliada requiere actor y fecha de conciliacion")
    if linea.estado is EstadoExtracto.DESCARTADO and not (linea.motivo_descarte or "").strip():
        raise InvarianteLineaError(linea.id, "una linea descartada requiere motivo")


# ==========================================================
# Importaciones
# ==========================================================
def buscar_importacion_activa(sesion: Session, cuenta_id: int, hash_archivo: str) -> ImportacionExtractoORM | None:
    stmt = select(ImportacionExtractoORM).where(
        ImportacionExtractoORM.clave_duplicado == clave_duplicado(cuenta_id, hash_archivo)
    )
    return sesion.scalars(stmt).first()


def crear_importacion(sesion: Session, meta: MetaImportacion) -> ImportacionExtractoORM:
    imp = ImportacionExtractoORM(
        cuenta_id=meta.cuenta_id,
        cuenta_nombre=meta.cuenta_nombre,
        nombre_archivo=meta.nombre_archivo,
        tamano_archivo=meta.tamano_archivo,
        formato=meta.formato,
        hash_archivo=meta.hash_archivo,
        clave_duplicado=clave_duplicado(meta.cuenta_id, meta.hash_archivo),
        fecha_inicio=meta.fecha_inicio,
        fecha_fin=meta.fecha_fin,
        saldo_inicial=meta.saldo_inicial,
        saldo_final=meta.saldo_final,
        estado=EstadoImportacion.EN_PROCESO,
        creado_por=meta.creado_por,
        fecha_creacion=ahora(),
        total=0, pendientes=0, sugeridos=0, conciliados=0, descartados=0,
    )
    sesion.add(imp)
    sesion.flush()
    return imp


def obtener_importacion(sesion: Session, importacion_id: int) -> ImportacionExtractoORM:
    imp = sesion.get(ImportacionExtractoORM, importacion_id, populate_existing=True)
    if imp is None:
        raise NoEncontradoError("Importacion", importacion_id)
    return imp


def obtener_importacion_abierta(sesion: Session, importacion_id: int) -> ImportacionExtractoORM:
    imp = obtener_importacion(sesion, importacion_id)
    if imp.estado is not EstadoImportacion.EN_PROCESO:
        raise EstadoInvalidoError(
            imp.estado,
            mensaje=f"La importacion {importacion_id} esta {imp.estado.value}; no admite cambios en sus lineas",
        )
    return imp


def listar_importaciones(sesion: Session, cuenta_id: int | None = None) -> list[ImportacionExtractoORM]:
    stmt = select(ImportacionExtractoORM)
    if cuenta_id is not None:
        stmt = stmt.where(ImportacionExtractoORM.cuenta_id == cuenta_id)
    stmt = stmt.order_by(ImportacionExtractoORM.fecha_creacion.desc(), ImportacionExtractoORM.id.desc())
    return list(sesion.scalars(stmt))


def cambiar_estado_importacion(
    sesion: Session,
    importacion_id: int,
    desde: EstadoImportacion,
    hacia: EstadoImportacion,
    **valores: Any,
) -> ImportacionExtractoORM:
    """Compare-and-set sobre el estado de la importacion."""
    stmt = (
        update(ImportacionExtractoORM)
        .where(ImportacionExtractoORM.id == importacion_id, ImportacionExtractoORM.estado == desde)
        .values(estado=hacia, **valores)
        .execution_options(synchronize_session=False)
    )
    if sesion.execute(stmt).rowcount == 0:
        actual = obtener_importacion(sesion, importacion_id)
        raise EstadoInvalidoError(actual.estado, hacia)
    return obtener_importacion(sesion, importacion_id)


# ==========================================================
# Lineas
# ==========================================================
def _a_decimal(valor: Any, campo: str, numero_linea: int) -> Decimal | None:
    if valor is None:
        return None
    try:
        return Decimal(str(valor)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError) as exc:
        raise IngestaError(f"Linea {numero_linea}: {campo} no numerico ({valor!r})", numero_linea) from exc


def insertar_lineas(
    sesion: Session,
    importacion: ImportacionExtractoORM,
    lineas: Iterable[LineaParseada],
) -> list[LineaExtractoORM]:
    """Inserta las lineas en PENDIENTE numeradas en el orden de origen."""
    filas: list[LineaExtractoORM] = []
    for numero, lp in enumerate(lineas, start=1):
        if not isinstance(lp.fecha, date):
            raise IngestaError(f"Linea {numero}: fecha invalida ({lp.fecha!r})", numero)
        importe = _a_decimal(lp.importe, "importe", numero)
        if importe is None or importe < 0:
            raise IngestaError(f"Linea {numero}: el importe debe ser una magnitud >= 0", numero)
        fila = LineaExtractoORM(
            importacion_id=importacion.id,
            numero_linea=numero,
            cuenta_id=importacion.cuenta_id,
            tipo=lp.tipo,
            fecha=lp.fecha,
            fecha_valor=lp.fecha_valor,
            concepto=(lp.concepto or "")[:200],
            concepto_original=lp.concepto_original or lp.concepto or "",
            importe=importe,
            saldo=_a_decimal(lp.saldo, "saldo", numero),
            referencia_banco=lp.referencia_banco or None,
            codigo_operacion=lp.codigo_operacion or None,
            estado=EstadoExtracto.PENDIENTE,
        )
        verificar_invariantes(fila)
        filas.append(fila)

    sesion.add_all(filas)
    sesion.flush()
    return filas


def obtener_linea(sesion: Session, linea_id: int) -> LineaExtractoORM:
    linea = sesion.get(LineaExtractoORM, linea_id, populate_existing=True)
    if linea is None:
        raise NoEncontradoError("Linea", linea_id)
    return linea


def transicionar(
    sesion: Session,
    linea_id: int,
    desde: EstadoExtracto,
    hacia: EstadoExtracto,
    **valores: Any,
) -> LineaExtractoORM:
    """Mueve la linea de ``desde`` a ``hacia`` solo si sigue en ``desde``.

    Si otra operacion la movio antes, lanza ``EstadoInvalidoError`` con el
    estado real; la linea no se toca.
    """
    validar_transicion(desde, hacia)
    stmt = (
        update(LineaExtractoORM)
        .where(LineaExtractoORM.id == linea_id, LineaExtractoORM.estado == desde)
        .values(estado=hacia, **valores)
        .execution_options(synchronize_session=False)
    )
    if sesion.execute(stmt).rowcount == 0:
        actual = obtener_linea(sesion, linea_id)
        raise EstadoInvalidoError(actual.estado, hacia)
    linea = obtener_linea(sesion, linea_id)
    verificar_invariantes(linea)
    return linea


def registrar_evento(
    sesion: Session,
    linea: LineaExtractoORM,
    transicion: str,
    estado_anterior: EstadoExtracto,
    *,
    movimiento_id: int | None = None,
    confianza: int | None = None,
    motivo: str | None = None,
    criterios: Iterable[str] | None = None,
    actor: str | None = None,
    detalle: str | None = None,
) -> EventoLineaORM:
    evento = EventoLineaORM(
        linea_id=linea.id,
        importacion_id=linea.importacion_id,
        transicion=transicion,
        estado_anterior=estado_anterior,
        estado_nuevo=linea.estado,
        movimiento_id=movimiento_id,
        confianza=confianza,
        motivo=motivo,
        criterios=list(criterios) if criterios is not None else None,
        actor=actor,
        detalle=detalle,
        fecha=ahora(),
    )
    sesion.add(evento)
    return evento


def eventos_de_linea(sesion: Session, linea_id: int) -> list[EventoLineaORM]:
    stmt = select(EventoLineaORM).where(EventoLineaORM.linea_id == linea_id).order_by(EventoLineaORM.id)
    return list(sesion.scalars(stmt))


def ids_pendientes(sesion: Session, importacion_id: int) -> list[int]:
    stmt = (
        select(LineaExtractoORM.id)
        .where(
            LineaExtractoORM.importacion_id == importacion_id,
            LineaExtractoORM.estado == EstadoExtracto.PENDIENTE,
        )
        .order_by(LineaExtractoORM.numero_linea)
    )
    return list(sesion.scalars(stmt))


def listar_lineas(
    sesion: Session,
    importacion_id: int,
    estado: EstadoExtracto | None = None,
    offset: int = 0,
    limite: int | None = None,
) -> tuple[list[LineaExtractoORM], int]:
    filtros = [LineaExtractoORM.importacion_id == importacion_id]
    if estado is not None:
        filtros.append(LineaExtractoORM.estado == estado)

    total = sesion.scalar(select(func.count()).select_from(LineaExtractoORM).where(*filtros)) or 0
    stmt = (
        select(LineaExtractoORM)
        .where(*filtros)
        .order_by(LineaExtractoORM.fecha, LineaExtractoORM.numero_linea)
        .offset(offset)
    )
    if limite is not None:
        stmt = stmt.limit(limite)
    return list(sesion.scalars(stmt)), total


# ==========================================================
# Contadores
# ==========================================================
def contar_por_estado(sesion: Session, importacion_id: int) -> Contadores:
    stmt = (
        select(LineaExtractoORM.estado, func.count())
        .where(LineaExtractoORM.importacion_id == importacion_id)
        .group_by(LineaExtractoORM.estado)
    )
    por_estado = {estado: n for estado, n in sesion.execute(stmt)}
    return Contadores(
        total=sum(por_estado.values()),
        pendientes=por_estado.get(EstadoExtracto.PENDIENTE, 0),
        sugeridos=por_estado.get(EstadoExtracto.SUGERIDO, 0),
        conciliados=por_estado.get(EstadoExtracto.CONCILIADO, 0),
        descartados=por_estado.get(EstadoExtracto.DESCARTADO, 0),
    )


def guardar_contadores(sesion: Session, importacion_id: int, contadores: Contadores) -> None:
    stmt = (
        update(ImportacionExtractoORM)
        .where(ImportacionExtractoORM.id == importacion_id)
        .values(
            total=contadores.total,
            pendientes=contadores.pendientes,
            sugeridos=contadores.sugeridos,
            conciliados=contadores.conciliados,
            descartados=contadores.descartados,
        )
        .execution_options(synchronize_session=False)
    )
    sesion.execute(stmt)

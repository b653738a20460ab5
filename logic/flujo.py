"""Resolucion de lineas: aprobar, rechazar, conciliar a mano y descartar.

Conciliar una linea y reclamar su movimiento de tesoreria es una sola unidad:
o se ven ambos cambios o ninguno.
"""
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from infra import repositorio
from infra.bd import FabricaSesiones, unidad_de_trabajo
from infra.logger import get_logger
from infra.orm import LineaExtractoORM
from infra.pasarela import PasarelaMovimientos
from logic.errores import (
    ConflictoError, EstadoInvalidoError, NoEncontradoError, ValidacionError,
)
from logic.modelos import (
    EstadoExtracto, EventoLinea, LineaExtracto, MovimientoTesoreria,
)

logger = get_logger(__name__)

MOTIVO_MANUAL = "Conciliación manual"
CRITERIO_MANUAL = "seleccionado manualmente"

# recibe la sesion y la funcion de reclamo; devuelve la linea conciliada
Operacion = Callable[[Session, Callable[[Session, int], None]], LineaExtractoORM]


def _exigir_texto(valor: str | None, mensaje: str) -> str:
    if valor is None or not str(valor).strip():
        raise ValidacionError(mensaje)
    return str(valor).strip()


class FlujoConciliacion:
    def __init__(
        self,
        fabrica: FabricaSesiones,
        pasarela: PasarelaMovimientos,
        recalcular: Callable[[int], object] | None = None,
    ):
        self.fabrica = fabrica
        self.pasarela = pasarela
        self._recalcular = recalcular

    def _tras_transicion(self, importacion_id: int) -> None:
        if self._recalcular is not None:
            self._recalcular(importacion_id)

    @staticmethod
    def _linea_abierta(sesion: Session, linea_id: int) -> LineaExtractoORM:
        linea = repositorio.obtener_linea(sesion, linea_id)
        repositorio.obtener_importacion_abierta(sesion, linea.importacion_id)
        return linea

    # ------------------------------------------------------------------
    # Reclamo + transicion
    # ------------------------------------------------------------------
    def _conciliar(self, linea_id: int, operacion: Operacion) -> LineaExtracto:
        reclamados: list[int] = []

        def reclamar(sesion: Session, movimiento_id: int) -> None:
            self.pasarela.reclamar(sesion, movimiento_id, linea_id)
            reclamados.append(movimiento_id)

        try:
            with unidad_de_trabajo(self.fabrica) as sesion:
                resultado = operacion(sesion, reclamar).to_dto()
        except IntegrityError as exc:
            # indice unico: el movimiento ya esta conciliado con otra linea
            self._compensar(reclamados, linea_id)
            raise ConflictoError(
                None, f"El movimiento de la linea {linea_id} ya esta conciliado con otra linea"
            ) from exc
        except Exception:
            self._compensar(reclamados, linea_id)
            raise
        self._tras_transicion(resultado.importacion_id)
        return resultado

    def _compensar(self, reclamados: list[int], linea_id: int) -> None:
        """Deshace reclamos que no viajaron en la transaccion revertida."""
        if self.pasarela.comparte_transaccion:
            return
        for movimiento_id in reclamados:
            logger.warning("Liberando movimiento %s reclamado por la linea %s", movimiento_id, linea_id)
            with unidad_de_trabajo(self.fabrica) as sesion:
                self.pasarela.liberar(sesion, movimiento_id, linea_id)

    def aprobar(self, linea_id: int, actor: str) -> LineaExtracto:
        """SUGERIDO -> CONCILIADO reclamando el movimiento sugerido.

        Si otro usuario ya concilio ese movimiento lanza ``ConflictoError`` y la
        linea sigue SUGERIDO.
        """
        actor = _exigir_texto(actor, "Debe indicar quien aprueba la conciliacion")

        def operacion(sesion: Session, reclamar):
            linea = self._linea_abierta(sesion, linea_id)
            if linea.estado is not EstadoExtracto.SUGERIDO:
                raise EstadoInvalidoError(linea.estado, EstadoExtracto.CONCILIADO)
            movimiento_id = linea.movimiento_id
            linea = repositorio.transicionar(
                sesion, linea_id, EstadoExtracto.SUGERIDO, EstadoExtracto.CONCILIADO,
                conciliado_por=actor,
                fecha_conciliacion=repositorio.ahora(),
            )
            try:
                reclamar(sesion, movimiento_id)
            except ConflictoError:
                logger.warning("Linea %s: el movimiento %s ya estaba conciliado", linea_id, movimiento_id)
                raise
            repositorio.registrar_evento(
                sesion, linea, "aprobar", EstadoExtracto.SUGERIDO,
                movimiento_id=movimiento_id,
                confianza=linea.confianza,
                motivo=linea.motivo,
                criterios=linea.criterios,
                actor=actor,
            )
            return linea

        resultado = self._conciliar(linea_id, operacion)
        logger.info("Linea %s conciliada con el movimiento %s por %s", linea_id, resultado.movimiento_id, actor)
        return resultado

    def conciliar_manual(self, linea_id: int, movimiento_id: int, actor: str) -> LineaExtracto:
        """PENDIENTE/SUGERIDO -> CONCILIADO con un movimiento elegido por el usuario."""
        actor = _exigir_texto(actor, "Debe indicar quien concilia")

        def operacion(sesion: Session, reclamar):
            linea = self._linea_abierta(sesion, linea_id)
            anterior = linea.estado
            if anterior not in (EstadoExtracto.PENDIENTE, EstadoExtracto.SUGERIDO):
                raise EstadoInvalidoError(anterior, EstadoExtracto.CONCILIADO)

            mov = self.pasarela.obtener(sesion, movimiento_id)
            if mov is None:
                raise NoEncontradoError("Movimiento de tesoreria", movimiento_id)
            if mov.conciliado:
                raise ConflictoError(movimiento_id)
            if mov.cuenta_id != linea.cuenta_id:
                raise ValidacionError(
                    f"El movimiento {movimiento_id} es de la cuenta {mov.cuenta_id}, "
                    f"la linea de la cuenta {linea.cuenta_id}"
                )
            if mov.tipo != linea.tipo:
                raise ValidacionError(
                    f"El movimiento {movimiento_id} es {mov.tipo.value} y la linea {linea.tipo.value}"
                )
            if mov.importe != linea.importe:
                logger.info(
                    "Conciliacion manual con diferencia de importe: linea %s (%s) / movimiento %s (%s)",
                    linea_id, linea.importe, movimiento_id, mov.importe,
                )

            sugerido = linea.movimiento_id if anterior is EstadoExtracto.SUGERIDO else None
            linea = repositorio.transicionar(
                sesion, linea_id, anterior, EstadoExtracto.CONCILIADO,
                movimiento_id=movimiento_id,
                confianza=100,
                motivo=MOTIVO_MANUAL,
                criterios=[CRITERIO_MANUAL],
                conciliado_por=actor,
                fecha_conciliacion=repositorio.ahora(),
            )
            reclamar(sesion, movimiento_id)
            repositorio.registrar_evento(
                sesion, linea, "conciliar_manual", anterior,
                movimiento_id=movimiento_id,
                confianza=100,
                motivo=MOTIVO_MANUAL,
                criterios=[CRITERIO_MANUAL],
                actor=actor,
                detalle=f"sustituye la sugerencia {sugerido}" if sugerido not in (None, movimiento_id) else None,
            )
            return linea

        resultado = self._conciliar(linea_id, operacion)
        logger.info("Linea %s conciliada manualmente con el movimiento %s por %s", linea_id, movimiento_id, actor)
        return resultado

    # ------------------------------------------------------------------
    # Transiciones sin reclamo
    # ------------------------------------------------------------------
    def rechazar(self, linea_id: int, actor: str | None = None) -> LineaExtracto:
        """SUGERIDO -> PENDIENTE. La propuesta rechazada queda en el historial."""
        with unidad_de_trabajo(self.fabrica) as sesion:
            linea = self._linea_abierta(sesion, linea_id)
            if linea.estado is not EstadoExtracto.SUGERIDO:
                raise EstadoInvalidoError(linea.estado, EstadoExtracto.PENDIENTE)
            previo = linea.to_dto()
            linea = repositorio.transicionar(
                sesion, linea_id, EstadoExtracto.SUGERIDO, EstadoExtracto.PENDIENTE,
                movimiento_id=None, confianza=None, motivo=None, criterios=None,
            )
            repositorio.registrar_evento(
                sesion, linea, "rechazar", EstadoExtracto.SUGERIDO,
                movimiento_id=previo.movimiento_id,
                confianza=previo.confianza,
                motivo=previo.motivo,
                criterios=previo.criterios,
                actor=actor,
            )
            resultado = linea.to_dto()
        self._tras_transicion(resultado.importacion_id)
        return resultado

    def descartar(self, linea_id: int, motivo: str, actor: str) -> LineaExtracto:
        """PENDIENTE/SUGERIDO -> DESCARTADO. Exige motivo; la sugerencia se abandona."""
        motivo = _exigir_texto(motivo, "Debe indicar el motivo del descarte")
        with unidad_de_trabajo(self.fabrica) as sesion:
            linea = self._linea_abierta(sesion, linea_id)
            anterior = linea.estado
            if anterior not in (EstadoExtracto.PENDIENTE, EstadoExtracto.SUGERIDO):
                raise EstadoInvalidoError(anterior, EstadoExtracto.DESCARTADO)
            previo = linea.to_dto()
            linea = repositorio.transicionar(
                sesion, linea_id, anterior, EstadoExtracto.DESCARTADO,
                movimiento_id=None, confianza=None, motivo=None, criterios=None,
                descartado_por=actor,
                fecha_descarte=repositorio.ahora(),
                motivo_descarte=motivo,
            )
            repositorio.registrar_evento(
                sesion, linea, "descartar", anterior,
                movimiento_id=previo.movimiento_id,
                confianza=previo.confianza,
                motivo=previo.motivo,
                criterios=previo.criterios,
                actor=actor,
                detalle=motivo,
            )
            resultado = linea.to_dto()
        self._tras_transicion(resultado.importacion_id)
        return resultado

    # ------------------------------------------------------------------
    # Consultas
    # ------------------------------------------------------------------
    def buscar_candidatos_manual(
        self,
        linea_id: int,
        margen_dias: int = 10,
        margen_importe: Decimal = Decimal("0.10"),
        limite: int = 20,
    ) -> list[MovimientoTesoreria]:
        """Movimientos libres parecidos a la linea (importe +-10 %, fecha +-margen)."""
        with unidad_de_trabajo(self.fabrica) as sesion:
            linea = repositorio.obtener_linea(sesion, linea_id)
            holgura = (linea.importe * Decimal(str(margen_importe))).quantize(Decimal("0.01"))
            return self.pasarela.buscar(
                sesion,
                cuenta_id=linea.cuenta_id,
                tipo=linea.tipo,
                importe_min=linea.importe - holgura,
                importe_max=linea.importe + holgura,
                desde=linea.fecha - timedelta(days=margen_dias),
                hasta=linea.fecha + timedelta(days=margen_dias),
                limite=limite,
            )

    def historial(self, linea_id: int) -> list[EventoLinea]:
        with unidad_de_trabajo(self.fabrica) as sesion:
            repositorio.obtener_linea(sesion, linea_id)
            return [e.to_dto() for e in repositorio.eventos_de_linea(sesion, linea_id)]

"""Ciclo de vida de las importaciones de extracto y sus contadores."""
from __future__ import annotations

from typing import Iterable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from infra import repositorio
from infra.bd import FabricaSesiones, unidad_de_trabajo
from infra.config import PaginacionConfig
from infra.logger import get_logger
from logic.errores import (
    ConciliacionError, ImportacionDuplicadaError, IngestaError, ValidacionError,
)
from logic.modelos import (
    Contadores, EstadoExtracto, EstadoImportacion, ImportacionExtracto, LineaExtracto,
    LineaParseada, MetaImportacion, Pagina,
)

logger = get_logger(__name__)


class GestorImportaciones:
    def __init__(self, fabrica: FabricaSesiones, paginacion: PaginacionConfig = PaginacionConfig()):
        self.fabrica = fabrica
        self.paginacion = paginacion

    # ------------------------------------------------------------------
    # Alta
    # ------------------------------------------------------------------
    def iniciar(self, meta: MetaImportacion, lineas: Iterable[LineaParseada]) -> ImportacionExtracto:
        """Crea la importacion EN_PROCESO con todas sus lineas en PENDIENTE.

        Rechaza el archivo si ya hay una importacion viva con el mismo hash en la
        misma cuenta. Si la ingesta de lineas falla a medias, no queda ninguna
        linea y la importacion se devuelve en estado ERROR con el mensaje.
        """
        if isinstance(lineas, (list, tuple)) and not lineas:
            raise ValidacionError("No se encontraron movimientos en el archivo")

        try:
            with unidad_de_trabajo(self.fabrica) as sesion:
                existente = repositorio.buscar_importacion_activa(sesion, meta.cuenta_id, meta.hash_archivo)
                if existente is not None:
                    raise ImportacionDuplicadaError(meta.hash_archivo, meta.cuenta_id, existente.id)
                importacion_id = repositorio.crear_importacion(sesion, meta).id
        except IntegrityError as exc:
            # otra importacion del mismo archivo gano la carrera
            raise ImportacionDuplicadaError(meta.hash_archivo, meta.cuenta_id) from exc

        try:
            with unidad_de_trabajo(self.fabrica) as sesion:
                imp = repositorio.obtener_importacion(sesion, importacion_id)
                filas = repositorio.insertar_lineas(sesion, imp, lineas)
                if not filas:
                    raise IngestaError("No se encontraron movimientos en el archivo")
                fechas = [f.fecha for f in filas]
                imp.fecha_inicio = imp.fecha_inicio or min(fechas)
                imp.fecha_fin = imp.fecha_fin or max(fechas)
                imp.total = imp.pendientes = len(filas)
                resultado = imp.to_dto()
        except SQLAlchemyError as exc:
            logger.exception("Fallo de base de datos ingiriendo la importacion %s", importacion_id)
            self._marcar_error(importacion_id, f"Error de base de datos: {exc.__class__.__name__}")
            raise
        except Exception as exc:
            # cualquier fallo del lector de lineas deja la importacion en ERROR
            logger.warning("Importacion %s en ERROR: %s", importacion_id, exc)
            return self._marcar_error(importacion_id, str(exc) or exc.__class__.__name__)

        logger.info(
            "Importacion %s creada: cuenta %s, %s lineas, formato %s, archivo '%s'",
            resultado.id, meta.cuenta_id, resultado.contadores.total, meta.formato.value, meta.nombre_archivo,
        )
        return resultado

    def _marcar_error(self, importacion_id: int, mensaje: str) -> ImportacionExtracto:
        with unidad_de_trabajo(self.fabrica) as sesion:
            imp = repositorio.cambiar_estado_importacion(
                sesion, importacion_id, EstadoImportacion.EN_PROCESO, EstadoImportacion.ERROR,
                mensaje_error=mensaje[:2000],
                clave_duplicado=None,
                total=0, pendientes=0, sugeridos=0, conciliados=0, descartados=0,
            )
            return imp.to_dto()

    # ------------------------------------------------------------------
    # Contadores
    # ------------------------------------------------------------------
    def recalcular_contadores(self, importacion_id: int) -> Contadores | None:
        """Rederiva los contadores a partir de las lineas.

        Nunca propaga errores: la transicion que lo invoca ya quedo confirmada y
        el siguiente recalculo corregira los contadores.
        """
        try:
            with unidad_de_trabajo(self.fabrica) as sesion:
                contadores = repositorio.contar_por_estado(sesion, importacion_id)
                repositorio.guardar_contadores(sesion, importacion_id, contadores)
            return contadores
        except (SQLAlchemyError, ConciliacionError):
            logger.exception("No se pudieron recalcular los contadores de la importacion %s", importacion_id)
            return None

    def contadores(self, importacion_id: int) -> Contadores:
        with unidad_de_trabajo(self.fabrica) as sesion:
            repositorio.obtener_importacion(sesion, importacion_id)
            return repositorio.contar_por_estado(sesion, importacion_id)

    # ------------------------------------------------------------------
    # Cierre
    # ------------------------------------------------------------------
    def finalizar(self, importacion_id: int, actor: str) -> ImportacionExtracto:
        """EN_PROCESO -> COMPLETADA. Cierre administrativo: admite lineas sin resolver."""
        with unidad_de_trabajo(self.fabrica) as sesion:
            contadores = repositorio.contar_por_estado(sesion, importacion_id)
            imp = repositorio.cambiar_estado_importacion(
                sesion, importacion_id, EstadoImportacion.EN_PROCESO, EstadoImportacion.COMPLETADA,
                finalizado_por=actor,
                fecha_finalizacion=repositorio.ahora(),
                total=contadores.total,
                pendientes=contadores.pendientes,
                sugeridos=contadores.sugeridos,
                conciliados=contadores.conciliados,
                descartados=contadores.descartados,
            )
            resultado = imp.to_dto()
        logger.info(
            "Importacion %s finalizada por %s (%s%% conciliado, %s pendientes, %s sugeridas)",
            importacion_id, actor, contadores.tasa_conciliacion, contadores.pendientes, contadores.sugeridos,
        )
        return resultado

    def cancelar(self, importacion_id: int) -> ImportacionExtracto:
        """EN_PROCESO -> CANCELADA. Las lineas ya conciliadas se mantienen."""
        with unidad_de_trabajo(self.fabrica) as sesion:
            imp = repositorio.cambiar_estado_importacion(
                sesion, importacion_id, EstadoImportacion.EN_PROCESO, EstadoImportacion.CANCELADA,
                clave_duplicado=None,
            )
            resultado = imp.to_dto()
        logger.info("Importacion %s cancelada", importacion_id)
        return resultado

    # ------------------------------------------------------------------
    # Consultas
    # ------------------------------------------------------------------
    def obtener(self, importacion_id: int) -> ImportacionExtracto:
        with unidad_de_trabajo(self.fabrica) as sesion:
            return repositorio.obtener_importacion(sesion, importacion_id).to_dto()

    def listar(self, cuenta_id: int | None = None) -> list[ImportacionExtracto]:
        with unidad_de_trabajo(self.fabrica) as sesion:
            return [imp.to_dto() for imp in repositorio.listar_importaciones(sesion, cuenta_id)]

    def listar_lineas(
        self,
        importacion_id: int,
        estado: EstadoExtracto | None = None,
        pagina: int = 1,
        limite: int | None = None,
    ) -> Pagina[LineaExtracto]:
        if pagina < 1:
            raise ValidacionError("La pagina debe ser >= 1")
        limite = limite or self.paginacion.limite_defecto
        limite = max(1, min(limite, self.paginacion.limite_maximo))
        with unidad_de_trabajo(self.fabrica) as sesion:
            repositorio.obtener_importacion(sesion, importacion_id)
            filas, total = repositorio.listar_lineas(
                sesion, importacion_id, estado, offset=(pagina - 1) * limite, limite=limite,
            )
            return Pagina(
                elementos=[f.to_dto() for f in filas],
                total=total,
                pagina=pagina,
                limite=limite,
            )

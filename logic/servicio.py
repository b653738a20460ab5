"""Fachada de conciliacion bancaria para una empresa.

Agrupa el gestor de importaciones, el motor de matching y el flujo de
resolucion sobre una misma fabrica de sesiones y pasarela de tesoreria::

    registro = RegistroEmpresas()
    registro.registrar("acme", "postgresql+psycopg://.../acme")
    servicio = ServicioConciliacion.para_empresa(registro, "acme", PasarelaMovimientosSQL)
    imp = servicio.importar_dataframe(df, cuenta_id=7, hash_archivo=h, creado_por="ana")
    servicio.ejecutar_matching_automatico(imp.id)
"""
from __future__ import annotations

from decimal import Decimal
from typing import Callable, Iterable

import pandas as pd

from infra.bd import FabricaSesiones, RegistroEmpresas
from infra.config import Config, LecturaConfig, PaginacionConfig
from infra.export import lineas_a_excel_bytes
from infra.logger import configurar_logging, get_logger
from infra.pasarela import PasarelaMovimientos
from logic.conciliacion import MotorConciliacion, Parametros
from logic.flujo import FlujoConciliacion
from logic.importacion import GestorImportaciones
from logic.lectura import normalizar_df
from logic.modelos import (
    Contadores, EstadoExtracto, EstadoImportacion, EventoLinea, FormatoOrigen, ImportacionExtracto,
    LineaExtracto, LineaParseada, MetaImportacion, MovimientoTesoreria, Pagina,
)

logger = get_logger(__name__)


class ServicioConciliacion:
    def __init__(
        self,
        fabrica: FabricaSesiones,
        pasarela: PasarelaMovimientos,
        parametros: Parametros | None = None,
        paginacion: PaginacionConfig = PaginacionConfig(),
        lectura: LecturaConfig = LecturaConfig(),
        matching_al_importar: bool = False,
    ):
        self.parametros = parametros or Parametros()
        self.lectura = lectura
        self.matching_al_importar = matching_al_importar
        self.importaciones = GestorImportaciones(fabrica, paginacion)
        self.motor = MotorConciliacion(
            fabrica, pasarela, self.parametros, recalcular=self.importaciones.recalcular_contadores,
        )
        self.flujo = FlujoConciliacion(
            fabrica, pasarela, recalcular=self.importaciones.recalcular_contadores,
        )

    @classmethod
    def desde_config(
        cls, fabrica: FabricaSesiones, pasarela: PasarelaMovimientos, cfg: Config,
    ) -> "ServicioConciliacion":
        configurar_logging(cfg.app.nivel_log, cfg.app.formato_log)
        return cls(
            fabrica,
            pasarela,
            Parametros.desde_config(cfg.conciliacion),
            paginacion=cfg.paginacion,
            lectura=cfg.lectura,
            matching_al_importar=cfg.conciliacion.matching_al_importar,
        )

    @classmethod
    def para_empresa(
        cls,
        registro: RegistroEmpresas,
        empresa_id: str,
        pasarela_factory: Callable[[], PasarelaMovimientos],
        cfg: Config | None = None,
    ) -> "ServicioConciliacion":
        """Servicio ligado a la base de datos de ``empresa_id``."""
        fabrica = registro.fabrica(empresa_id)
        if cfg is None:
            return cls(fabrica, pasarela_factory())
        return cls.desde_config(fabrica, pasarela_factory(), cfg)

    # ==========================================================
    # Importaciones
    # ==========================================================
    def iniciar_importacion(self, meta: MetaImportacion, lineas: Iterable[LineaParseada]) -> ImportacionExtracto:
        imp = self.importaciones.iniciar(meta, lineas)
        if self.matching_al_importar and imp.estado is EstadoImportacion.EN_PROCESO:
            self.motor.ejecutar_lote(imp.id)
            imp = self.importaciones.obtener(imp.id)
        return imp

    def importar_dataframe(
        self,
        df: pd.DataFrame,
        *,
        cuenta_id: int,
        hash_archivo: str,
        creado_por: str,
        formato: FormatoOrigen = FormatoOrigen.CSV,
        nombre_archivo: str = "",
        tamano_archivo: int = 0,
        cuenta_nombre: str = "",
    ) -> ImportacionExtracto:
        """Normaliza un extracto tabular y abre la importacion con sus lineas."""
        lineas = normalizar_df(df, self.lectura)
        saldos = [l.saldo for l in lineas if l.saldo is not None]
        meta = MetaImportacion(
            cuenta_id=cuenta_id,
            hash_archivo=hash_archivo,
            formato=formato,
            creado_por=creado_por,
            nombre_archivo=nombre_archivo,
            tamano_archivo=tamano_archivo,
            cuenta_nombre=cuenta_nombre,
            saldo_final=saldos[-1] if saldos else None,
        )
        logger.info("Extracto '%s': %s filas leidas, %s movimientos", nombre_archivo, len(df), len(lineas))
        return self.iniciar_importacion(meta, lineas)

    def obtener_importacion(self, importacion_id: int) -> ImportacionExtracto:
        return self.importaciones.obtener(importacion_id)

    def listar_importaciones(self, cuenta_id: int | None = None) -> list[ImportacionExtracto]:
        return self.importaciones.listar(cuenta_id)

    def contadores(self, importacion_id: int) -> Contadores:
        return self.importaciones.contadores(importacion_id)

    def finalizar_importacion(self, importacion_id: int, actor: str) -> ImportacionExtracto:
        return self.importaciones.finalizar(importacion_id, actor)

    def cancelar_importacion(self, importacion_id: int) -> ImportacionExtracto:
        return self.importaciones.cancelar(importacion_id)

    def listar_lineas(
        self,
        importacion_id: int,
        estado: EstadoExtracto | None = None,
        pagina: int = 1,
        limite: int | None = None,
    ) -> Pagina[LineaExtracto]:
        return self.importaciones.listar_lineas(importacion_id, estado, pagina, limite)

    def exportar_lineas_excel(self, importacion_id: int, estado: EstadoExtracto | None = None) -> bytes:
        lineas: list[LineaExtracto] = []
        pagina = 1
        while True:
            resultado = self.importaciones.listar_lineas(
                importacion_id, estado, pagina, self.importaciones.paginacion.limite_maximo,
            )
            lineas.extend(resultado.elementos)
            if pagina >= resultado.total_paginas:
                break
            pagina += 1
        return lineas_a_excel_bytes(lineas)

    # ==========================================================
    # Matching y resolucion
    # ==========================================================
    def ejecutar_matching_automatico(
        self,
        importacion_id: int,
        margen_dias: int | None = None,
        cancelado: Callable[[], bool] | None = None,
    ) -> list[LineaExtracto]:
        return self.motor.ejecutar_lote(importacion_id, margen_dias, cancelado)

    def aprobar_match(self, linea_id: int, actor: str) -> LineaExtracto:
        return self.flujo.aprobar(linea_id, actor)

    def rechazar_match(self, linea_id: int, actor: str | None = None) -> LineaExtracto:
        return self.flujo.rechazar(linea_id, actor)

    def conciliar_manual(self, linea_id: int, movimiento_id: int, actor: str) -> LineaExtracto:
        return self.flujo.conciliar_manual(linea_id, movimiento_id, actor)

    def descartar_linea(self, linea_id: int, motivo: str, actor: str) -> LineaExtracto:
        return self.flujo.descartar(linea_id, motivo, actor)

    def buscar_candidatos_manual(
        self,
        linea_id: int,
        margen_dias: int = 10,
        margen_importe: Decimal = Decimal("0.10"),
    ) -> list[MovimientoTesoreria]:
        return self.flujo.buscar_candidatos_manual(linea_id, margen_dias, margen_importe)

    def historial_linea(self, linea_id: int) -> list[EventoLinea]:
        return self.flujo.historial(linea_id)

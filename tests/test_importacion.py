from datetime import date
from decimal import Decimal

import pandas as pd
import pytest
from sqlalchemy.exc import OperationalError

from conftest import ids_lineas, linea, meta
from infra.bd import unidad_de_trabajo
from infra.orm import ImportacionExtractoORM
from logic.errores import (
    EstadoInvalidoError, ImportacionDuplicadaError, NoEncontradoError, ValidacionError,
)
from logic.importacion import GestorImportaciones
from logic.lectura import calcular_hash
from logic.modelos import EstadoExtracto, EstadoImportacion, TipoMovimiento


def test_importacion_crea_lineas_pendientes(servicio, importacion_basica):
    imp = importacion_basica
    assert imp.estado is EstadoImportacion.EN_PROCESO
    assert imp.contadores.total == 3
    assert imp.contadores.pendientes == 3
    assert imp.contadores.consistente()
    assert imp.fecha_inicio == date(2024, 3, 1)
    assert imp.fecha_fin == date(2024, 3, 20)

    pagina = servicio.listar_lineas(imp.id)
    assert pagina.total == 3
    assert [l.numero_linea for l in pagina.elementos] == [1, 2, 3]
    assert all(l.estado is EstadoExtracto.PENDIENTE for l in pagina.elementos)


def test_importacion_duplicada_mientras_sigue_abierta(servicio, importacion_basica):
    """Mismo hash y cuenta con la primera EN_PROCESO: error y ninguna importacion nueva."""
    with pytest.raises(ImportacionDuplicadaError) as exc:
        servicio.iniciar_importacion(meta(), [linea("10.00", date(2024, 3, 1))])
    assert exc.value.code == "DUPLICATE_IMPORT"
    assert exc.value.existente_id == importacion_basica.id
    assert len(servicio.listar_importaciones()) == 1


def test_mismo_archivo_en_otra_cuenta_se_admite(servicio, importacion_basica):
    otra = servicio.iniciar_importacion(meta(cuenta_id=2), [linea("10.00", date(2024, 3, 1))])
    assert otra.estado is EstadoImportacion.EN_PROCESO
    assert len(servicio.listar_importaciones()) == 2
    assert [i.id for i in servicio.listar_importaciones(cuenta_id=2)] == [otra.id]


def test_reimportar_tras_cancelar(servicio, importacion_basica):
    cancelada = servicio.cancelar_importacion(importacion_basica.id)
    assert cancelada.estado is EstadoImportacion.CANCELADA
    nueva = servicio.iniciar_importacion(meta(), [linea("10.00", date(2024, 3, 1))])
    assert nueva.id != importacion_basica.id


def test_reimportar_completada_es_duplicado(servicio, importacion_basica):
    servicio.finalizar_importacion(importacion_basica.id, "ana")
    with pytest.raises(ImportacionDuplicadaError):
        servicio.iniciar_importacion(meta(), [linea("10.00", date(2024, 3, 1))])


def test_lista_vacia_es_error_de_validacion(servicio):
    with pytest.raises(ValidacionError):
        servicio.iniciar_importacion(meta(), [])
    assert servicio.listar_importaciones() == []


def test_fallo_de_ingesta_deja_importacion_en_error(servicio):
    def lineas():
        yield linea("10.00", date(2024, 3, 1))
        raise ValueError("fila 2 ilegible")

    imp = servicio.iniciar_importacion(meta(), lineas())
    assert imp.estado is EstadoImportacion.ERROR
    assert "fila 2 ilegible" in imp.mensaje_error
    assert imp.contadores.total == 0
    assert servicio.listar_lineas(imp.id).total == 0

    # el ERROR no bloquea volver a subir el archivo
    nueva = servicio.iniciar_importacion(meta(), [linea("10.00", date(2024, 3, 1))])
    assert nueva.estado is EstadoImportacion.EN_PROCESO


def test_cualquier_fallo_del_lector_deja_importacion_en_error(servicio):
    def lineas():
        yield linea("10.00", date(2024, 3, 1))
        raise KeyError("columna 'importe'")

    imp = servicio.iniciar_importacion(meta(), lineas())
    assert imp.estado is EstadoImportacion.ERROR
    assert "importe" in imp.mensaje_error
    guardada = servicio.obtener_importacion(imp.id)
    assert guardada.estado is EstadoImportacion.ERROR
    assert guardada.contadores.total == 0

    nueva = servicio.iniciar_importacion(meta(), [linea("10.00", date(2024, 3, 1))])
    assert nueva.estado is EstadoImportacion.EN_PROCESO

def test_importe_negativo_es_error_de_ingesta(servicio):
    imp = servicio.iniciar_importacion(meta(), [linea("-5.00", date(2024, 3, 1))])
    assert imp.estado is EstadoImportacion.ERROR
    assert "importe" in imp.mensaje_error


def test_finalizar_es_administrativo(servicio, importacion_basica):
    """Se puede finalizar con lineas pendientes."""
    imp = servicio.finalizar_importacion(importacion_basica.id, "ana")
    assert imp.estado is EstadoImportacion.COMPLETADA
    assert imp.finalizado_por == "ana"
    assert imp.fecha_finalizacion is not None
    assert imp.contadores.pendientes == 3

    with pytest.raises(EstadoInvalidoError):
        servicio.finalizar_importacion(importacion_basica.id, "ana")
    with pytest.raises(EstadoInvalidoError):
        servicio.cancelar_importacion(importacion_basica.id)


def test_importacion_cerrada_no_admite_operaciones(servicio, importacion_basica):
    servicio.cancelar_importacion(importacion_basica.id)
    linea_id = ids_lineas(servicio, importacion_basica.id)[0]
    with pytest.raises(EstadoInvalidoError):
        servicio.descartar_linea(linea_id, "comision", "ana")
    with pytest.raises(EstadoInvalidoError):
        servicio.ejecutar_matching_automatico(importacion_basica.id)


def test_paginacion_y_filtro_por_estado(servicio):
    lineas = [linea(f"{i}.00", date(2024, 1, 1 + i % 28)) for i in range(1, 8)]
    imp = servicio.iniciar_importacion(meta(), lineas)

    p1 = servicio.listar_lineas(imp.id, pagina=1, limite=3)
    p3 = servicio.listar_lineas(imp.id, pagina=3, limite=3)
    assert p1.total == 7 and p1.total_paginas == 3
    assert len(p1.elementos) == 3 and len(p3.elementos) == 1
    fechas = [l.fecha for l in p1.elementos]
    assert fechas == sorted(fechas)

    primera = p1.elementos[0].id
    servicio.descartar_linea(primera, "duplicada en el banco", "ana")
    descartadas = servicio.listar_lineas(imp.id, estado=EstadoExtracto.DESCARTADO)
    assert [l.id for l in descartadas.elementos] == [primera]

    with pytest.raises(ValidacionError):
        servicio.listar_lineas(imp.id, pagina=0)
    assert servicio.listar_lineas(imp.id, limite=10_000).limite == 500


def test_importacion_inexistente(servicio):
    with pytest.raises(NoEncontradoError) as exc:
        servicio.obtener_importacion(999)
    assert exc.value.code == "NOT_FOUND"


def test_recalcular_corrige_contadores(servicio, fabrica, importacion_basica):
    with unidad_de_trabajo(fabrica) as sesion:
        imp = sesion.get(ImportacionExtractoORM, importacion_basica.id)
        imp.pendientes = 0

    contadores = servicio.importaciones.recalcular_contadores(importacion_basica.id)
    assert contadores.pendientes == 3
    assert servicio.obtener_importacion(importacion_basica.id).contadores.pendientes == 3


def test_recalcular_no_propaga_errores():
    def fabrica_rota():
        raise OperationalError("SELECT 1", {}, Exception("base de datos caida"))

    assert GestorImportaciones(fabrica_rota).recalcular_contadores(1) is None


def test_lineas_de_cargo(servicio):
    imp = servicio.iniciar_importacion(meta(), [linea("12.50", date(2024, 2, 1), tipo=TipoMovimiento.CARGO)])
    unica = servicio.listar_lineas(imp.id).elementos[0]
    assert unica.tipo is TipoMovimiento.CARGO
    assert str(unica.importe) == "12.50"


def test_importar_dataframe(servicio):
    df = pd.DataFrame({
        "Fecha": ["05/03/2024", "06/03/2024", "07/03/2024"],
        "Concepto": ["Recibo agua", "Transferencia cliente", "Sin importe"],
        "Importe": ["-10,00", "25,50", ""],
        "Saldo": ["990,00", "1.015,50", "1.015,50"],
    })
    imp = servicio.importar_dataframe(
        df, cuenta_id=1, hash_archivo=calcular_hash("marzo"), creado_por="ana", nombre_archivo="marzo.csv",
    )
    assert imp.contadores.total == 2
    assert imp.saldo_final == Decimal("1015.50")
    assert imp.fecha_inicio == date(2024, 3, 5)
    assert imp.nombre_archivo == "marzo.csv"

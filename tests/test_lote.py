from datetime import date

from conftest import ids_lineas, linea, meta
from logic.conciliacion import Parametros
from logic.modelos import EstadoExtracto, EstadoImportacion
from logic.servicio import ServicioConciliacion


def test_lote_sugiere_el_candidato_mas_cercano(servicio, alta_movimiento, importacion_basica):
    """100 con un candidato; cada 50 con el candidato de fecha mas cercana."""
    m100 = alta_movimiento("100.00", date(2024, 3, 2))
    m50_a = alta_movimiento("50.00", date(2024, 3, 4))
    m50_b = alta_movimiento("50.00", date(2024, 3, 18))

    sugeridas = servicio.ejecutar_matching_automatico(importacion_basica.id)
    assert [l.numero_linea for l in sugeridas] == [1, 2, 3]
    assert all(l.estado is EstadoExtracto.SUGERIDO for l in sugeridas)
    assert [l.movimiento_id for l in sugeridas] == [m100, m50_a, m50_b]
    assert sugeridas[0].criterios == ("importe exacto", "fecha cercana (1 días)")
    assert sugeridas[2].confianza == 55

    c = servicio.obtener_importacion(importacion_basica.id).contadores
    assert (c.total, c.pendientes, c.sugeridos) == (3, 0, 3)
    assert c.consistente()


def test_lote_sin_candidatos_deja_pendiente(servicio, alta_movimiento, importacion_basica):
    alta_movimiento("100.00", date(2024, 3, 30))  # fuera del margen
    alta_movimiento("99.99", date(2024, 3, 1))

    assert servicio.ejecutar_matching_automatico(importacion_basica.id) == []
    c = servicio.obtener_importacion(importacion_basica.id).contadores
    assert c.pendientes == 3 and c.sugeridos == 0


def test_margen_por_ejecucion(servicio, alta_movimiento, importacion_basica):
    alta_movimiento("100.00", date(2024, 3, 13))
    assert servicio.ejecutar_matching_automatico(importacion_basica.id) == []
    assert len(servicio.ejecutar_matching_automatico(importacion_basica.id, margen_dias=12)) == 1


def test_lote_es_idempotente(servicio, alta_movimiento, importacion_basica):
    alta_movimiento("100.00", date(2024, 3, 1))
    primera = servicio.ejecutar_matching_automatico(importacion_basica.id)
    segunda = servicio.ejecutar_matching_automatico(importacion_basica.id)
    assert len(primera) == 1
    assert segunda == []
    actual = servicio.listar_lineas(importacion_basica.id, estado=EstadoExtracto.SUGERIDO).elementos
    assert [l.movimiento_id for l in actual] == [primera[0].movimiento_id]


def test_mismas_entradas_mismas_sugerencias(fabrica, pasarela, alta_movimiento):
    """Dos importaciones identicas en cuentas distintas reciben la misma eleccion."""
    servicio = ServicioConciliacion(fabrica, pasarela)
    elegidos = []
    for cuenta in (1, 2):
        # empate total: misma fecha e importe, gana el id menor
        menor = alta_movimiento("75.00", date(2024, 6, 10), cuenta_id=cuenta)
        alta_movimiento("75.00", date(2024, 6, 10), cuenta_id=cuenta)
        imp = servicio.iniciar_importacion(meta(cuenta_id=cuenta), [linea("75.00", date(2024, 6, 10))])
        sugerida = servicio.ejecutar_matching_automatico(imp.id)[0]
        assert sugerida.movimiento_id == menor
        elegidos.append((sugerida.confianza, sugerida.criterios))
    assert elegidos[0] == elegidos[1]


def test_lote_cancelado_conserva_lo_hecho(servicio, alta_movimiento, importacion_basica):
    alta_movimiento("100.00", date(2024, 3, 1))
    alta_movimiento("50.00", date(2024, 3, 5))
    alta_movimiento("50.00", date(2024, 3, 20))

    llamadas = []

    def cancelado():
        llamadas.append(1)
        return len(llamadas) > 1

    parcial = servicio.ejecutar_matching_automatico(importacion_basica.id, cancelado=cancelado)
    assert len(parcial) == 1
    c = servicio.obtener_importacion(importacion_basica.id).contadores
    assert (c.sugeridos, c.pendientes) == (1, 2)

    # reanudar procesa solo lo que quedo pendiente
    resto = servicio.ejecutar_matching_automatico(importacion_basica.id)
    assert [l.numero_linea for l in resto] == [2, 3]


def test_confianza_minima(fabrica, pasarela, alta_movimiento, importacion_basica):
    exigente = ServicioConciliacion(fabrica, pasarela, Parametros(confianza_minima=60))
    alta_movimiento("100.00", date(2024, 3, 1))   # 70
    alta_movimiento("50.00", date(2024, 3, 8))    # 55
    sugeridas = exigente.ejecutar_matching_automatico(importacion_basica.id)
    assert [l.numero_linea for l in sugeridas] == [1]


def test_proponer_una_linea(servicio, alta_movimiento, importacion_basica):
    alta_movimiento("50.00", date(2024, 3, 5))
    linea_id = ids_lineas(servicio, importacion_basica.id)[1]
    sugerida = servicio.motor.proponer_linea(linea_id)
    assert sugerida.estado is EstadoExtracto.SUGERIDO
    # ya no esta pendiente
    assert servicio.motor.proponer_linea(linea_id) is None
    assert servicio.obtener_importacion(importacion_basica.id).contadores.sugeridos == 1


def test_matching_al_importar(fabrica, pasarela, alta_movimiento):
    alta_movimiento("20.00", date(2024, 7, 1))
    servicio = ServicioConciliacion(fabrica, pasarela, matching_al_importar=True)
    imp = servicio.iniciar_importacion(meta(), [linea("20.00", date(2024, 7, 1)), linea("21.00", date(2024, 7, 1))])
    assert imp.contadores.sugeridos == 1
    assert imp.contadores.pendientes == 1


def test_contadores_consistentes_en_todo_el_ciclo(servicio, alta_movimiento, importacion_basica):
    alta_movimiento("100.00", date(2024, 3, 1))
    alta_movimiento("50.00", date(2024, 3, 5))
    alta_movimiento("50.00", date(2024, 3, 20))
    uno, dos, tres = ids_lineas(servicio, importacion_basica.id)

    pasos = [
        lambda: servicio.ejecutar_matching_automatico(importacion_basica.id),
        lambda: servicio.aprobar_match(uno, "ana"),
        lambda: servicio.rechazar_match(dos),
        lambda: servicio.descartar_linea(tres, "comision", "ana"),
        lambda: servicio.ejecutar_matching_automatico(importacion_basica.id),
        lambda: servicio.finalizar_importacion(importacion_basica.id, "ana"),
    ]
    for paso in pasos:
        paso()
        guardados = servicio.obtener_importacion(importacion_basica.id).contadores
        assert guardados.consistente()
        assert guardados == servicio.contadores(importacion_basica.id)

    final = servicio.obtener_importacion(importacion_basica.id)
    assert (final.contadores.conciliados, final.contadores.sugeridos, final.contadores.descartados) == (1, 1, 1)
    assert final.tasa_conciliacion == 33


def test_lote_se_detiene_si_la_importacion_se_cancela(servicio, alta_movimiento, importacion_basica):
    alta_movimiento("100.00", date(2024, 3, 1))
    alta_movimiento("50.00", date(2024, 3, 5))
    alta_movimiento("50.00", date(2024, 3, 20))

    llamadas = []

    def cancelado():
        if not llamadas:
            servicio.cancelar_importacion(importacion_basica.id)
        llamadas.append(1)
        return False

    assert servicio.ejecutar_matching_automatico(importacion_basica.id, cancelado=cancelado) == []
    assert servicio.obtener_importacion(importacion_basica.id).estado is EstadoImportacion.CANCELADA
    estados = {l.estado for l in servicio.listar_lineas(importacion_basica.id).elementos}
    assert estados == {EstadoExtracto.PENDIENTE}


def test_contadores_al_dia_durante_el_lote(servicio, alta_movimiento, importacion_basica):
    alta_movimiento("100.00", date(2024, 3, 1))
    alta_movimiento("50.00", date(2024, 3, 5))
    alta_movimiento("50.00", date(2024, 3, 20))

    vistos = []

    def cancelado():
        c = servicio.obtener_importacion(importacion_basica.id).contadores
        vistos.append((c.sugeridos, c.pendientes))
        return False

    servicio.ejecutar_matching_automatico(importacion_basica.id, cancelado=cancelado)
    assert vistos == [(0, 3), (1, 2), (2, 1)]

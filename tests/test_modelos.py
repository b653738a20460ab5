import pytest

from logic.errores import EstadoInvalidoError
from logic.modelos import (
    ESTADOS_TERMINALES_LINEA, TRANSICIONES, Contadores, EstadoExtracto, Pagina,
    etiqueta_confianza, puede_transicionar, validar_transicion,
)


def test_tabla_de_transiciones_cubre_todos_los_estados():
    assert set(TRANSICIONES) == set(EstadoExtracto)
    assert ESTADOS_TERMINALES_LINEA == {EstadoExtracto.CONCILIADO, EstadoExtracto.DESCARTADO}


@pytest.mark.parametrize("desde,hacia", [
    (EstadoExtracto.PENDIENTE, EstadoExtracto.SUGERIDO),
    (EstadoExtracto.PENDIENTE, EstadoExtracto.CONCILIADO),
    (EstadoExtracto.PENDIENTE, EstadoExtracto.DESCARTADO),
    (EstadoExtracto.SUGERIDO, EstadoExtracto.CONCILIADO),
    (EstadoExtracto.SUGERIDO, EstadoExtracto.PENDIENTE),
    (EstadoExtracto.SUGERIDO, EstadoExtracto.DESCARTADO),
])
def test_transiciones_permitidas(desde, hacia):
    assert puede_transicionar(desde, hacia)


def test_estados_terminales_no_salen():
    for destino in EstadoExtracto:
        assert not puede_transicionar(EstadoExtracto.CONCILIADO, destino)
        assert not puede_transicionar(EstadoExtracto.DESCARTADO, destino)
    with pytest.raises(EstadoInvalidoError) as exc:
        validar_transicion(EstadoExtracto.DESCARTADO, EstadoExtracto.PENDIENTE)
    assert exc.value.code == "INVALID_STATE"
    assert exc.value.actual is EstadoExtracto.DESCARTADO


def test_etiquetas_de_confianza():
    assert etiqueta_confianza(100) == "Match muy probable"
    assert etiqueta_confianza(90) == "Match muy probable"
    assert etiqueta_confianza(75) == "Match probable"
    assert etiqueta_confianza(60) == "Match posible"
    assert etiqueta_confianza(59) == "Match improbable"


def test_contadores_y_tasa():
    c = Contadores(total=3, pendientes=1, sugeridos=0, conciliados=2, descartados=0)
    assert c.consistente()
    assert c.tasa_conciliacion == 67
    assert Contadores().tasa_conciliacion == 0
    assert not Contadores(total=2, pendientes=1).consistente()


def test_total_paginas():
    assert Pagina(total=0, limite=50).total_paginas == 0
    assert Pagina(total=101, limite=50).total_paginas == 3

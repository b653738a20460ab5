from datetime import date
from decimal import Decimal

import pytest

from infra.bd import crear_fabrica, crear_motor, crear_tablas, unidad_de_trabajo
from infra.pasarela import PasarelaMovimientosSQL
from logic.modelos import FormatoOrigen, LineaParseada, MetaImportacion, TipoMovimiento
from logic.servicio import ServicioConciliacion

CUENTA = 1


@pytest.fixture
def motor():
    m = crear_motor("sqlite+pysqlite://")
    crear_tablas(m)
    yield m
    m.dispose()


@pytest.fixture
def fabrica(motor):
    return crear_fabrica(motor)


@pytest.fixture
def pasarela():
    return PasarelaMovimientosSQL()


@pytest.fixture
def servicio(fabrica, pasarela):
    return ServicioConciliacion(fabrica, pasarela)


@pytest.fixture
def alta_movimiento(fabrica, pasarela):
    """Registra un movimiento de tesoreria y devuelve su id."""
    def _alta(importe, fecha, tipo=TipoMovimiento.ABONO, cuenta_id=CUENTA, **extra):
        with unidad_de_trabajo(fabrica) as sesion:
            mov = pasarela.alta(
                sesion, cuenta_id=cuenta_id, tipo=tipo, fecha=fecha, importe=Decimal(str(importe)), **extra
            )
        return mov.id
    return _alta


def linea(importe, fecha, concepto="Transferencia", tipo=TipoMovimiento.ABONO, **extra):
    return LineaParseada(
        fecha=fecha,
        concepto=concepto,
        concepto_original=concepto,
        importe=Decimal(str(importe)),
        tipo=tipo,
        **extra,
    )


def meta(hash_archivo="abc123", cuenta_id=CUENTA, **extra):
    return MetaImportacion(
        cuenta_id=cuenta_id,
        hash_archivo=hash_archivo,
        formato=FormatoOrigen.CSV,
        creado_por="ana",
        nombre_archivo="extracto.csv",
        **extra,
    )


@pytest.fixture
def importacion_basica(servicio):
    """Importacion con tres lineas de marzo de 2024 (100, 50, 50)."""
    return servicio.iniciar_importacion(meta(), [
        linea("100.00", date(2024, 3, 1), "Cobro factura F-100 ACME"),
        linea("50.00", date(2024, 3, 5), "Transferencia recibida"),
        linea("50.00", date(2024, 3, 20), "Transferencia recibida"),
    ])


def ids_lineas(servicio, importacion_id):
    pagina = servicio.listar_lineas(importacion_id, limite=500)
    return [l.id for l in sorted(pagina.elementos, key=lambda l: l.numero_linea)]

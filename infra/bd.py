"""Motor SQLAlchemy, unidad de trabajo y registro de bases por empresa."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from infra.config import BaseDatosConfig
from infra.logger import get_logger
from logic.errores import NoEncontradoError

logger = get_logger(__name__)

FabricaSesiones = Callable[[], Session]


def crear_motor(url: str, echo: bool = False) -> Engine:
    """Crea el motor. Las bases SQLite en memoria comparten una unica conexion."""
    kwargs: dict = {"echo": echo}
    u = make_url(url)
    if u.get_backend_name() == "sqlite" and u.database in (None, "", ":memory:"):
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    elif u.get_backend_name() != "sqlite":
        kwargs["pool_pre_ping"] = True
    return create_engine(url, **kwargs)


def motor_desde_config(cfg: BaseDatosConfig) -> Engine:
    return crear_motor(cfg.url, echo=cfg.echo)


def crear_fabrica(motor: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=motor, expire_on_commit=False)


def crear_tablas(motor: Engine) -> None:
    from infra.orm import Base
    import infra.pasarela  # noqa: F401  registra movimientos_tesoreria
    Base.metadata.create_all(motor)


@contextmanager
def unidad_de_trabajo(fabrica: FabricaSesiones) -> Iterator[Session]:
    """Transaccion: commit si el bloque termina bien, rollback si lanza."""
    sesion = fabrica()
    try:
        yield sesion
        sesion.commit()
    except Exception:
        sesion.rollback()
        raise
    finally:
        sesion.close()


class RegistroEmpresas:
    """Conexiones por empresa; se resuelve una vez por peticion y se pasa hacia abajo."""

    def __init__(self, echo: bool = False):
        self._echo = echo
        self._fabricas: dict[str, sessionmaker[Session]] = {}
        self._motores: dict[str, Engine] = {}

    def registrar(self, empresa_id: str, url: str, crear_esquema: bool = False) -> sessionmaker[Session]:
        motor = crear_motor(url, echo=self._echo)
        if crear_esquema:
            crear_tablas(motor)
        anterior = self._motores.pop(empresa_id, None)
        if anterior is not None:
            anterior.dispose()
        self._motores[empresa_id] = motor
        self._fabricas[empresa_id] = crear_fabrica(motor)
        logger.info("Empresa %s registrada (%s)", empresa_id, motor.url.render_as_string(hide_password=True))
        return self._fabricas[empresa_id]

    def fabrica(self, empresa_id: str) -> sessionmaker[Session]:
        try:
            return self._fabricas[empresa_id]
        except KeyError:
            raise NoEncontradoError("Empresa", empresa_id) from None

    def motor(self, empresa_id: str) -> Engine:
        try:
            return self._motores[empresa_id]
        except KeyError:
            raise NoEncontradoError("Empresa", empresa_id) from None

    def cerrar(self) -> None:
        for motor in self._motores.values():
            motor.dispose()
        self._motores.clear()
        self._fabricas.clear()

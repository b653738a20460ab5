"""Errores tipados de la conciliacion bancaria.

Cada error lleva un ``code`` estable para APIs y logs, ademas de los datos
estructurados necesarios para reaccionar sin parsear el mensaje.

    ConciliacionError
    +-- NoEncontradoError
    +-- EstadoInvalidoError
    +-- ValidacionError
    |   +-- InvarianteLineaError
    +-- ConflictoError
    +-- ImportacionDuplicadaError
    +-- IngestaError
"""
from __future__ import annotations

from typing import Any


class ConciliacionError(Exception):
    code: str = "CONCILIACION_ERROR"

    def __init__(self, mensaje: str):
        super().__init__(mensaje)
        self.mensaje = mensaje


class NoEncontradoError(ConciliacionError):
    code = "NOT_FOUND"

    def __init__(self, entidad: str, identificador: Any):
        super().__init__(f"{entidad} {identificador} no encontrado")
        self.entidad = entidad
        self.identificador = identificador


class EstadoInvalidoError(ConciliacionError):
    """Transicion no permitida desde el estado actual."""

    code = "INVALID_STATE"

    def __init__(self, actual: Any, destino: Any = None, mensaje: str | None = None):
        if mensaje is None:
            actual_txt = getattr(actual, "value", actual)
            destino_txt = getattr(destino, "value", destino)
            mensaje = f"Transicion no permitida: {actual_txt} -> {destino_txt}"
        super().__init__(mensaje)
        self.actual = actual
        self.destino = destino


class ValidacionError(ConciliacionError):
    code = "VALIDATION"


class InvarianteLineaError(ValidacionError):
    code = "LINE_INVARIANT"

    def __init__(self, linea_id: Any, mensaje: str):
        super().__init__(f"Linea {linea_id}: {mensaje}")
        self.linea_id = linea_id


class ConflictoError(ConciliacionError):
    """El movimiento de tesoreria ya fue reclamado por otra conciliacion."""

    code = "CONFLICT"

    def __init__(self, movimiento_id: Any, mensaje: str | None = None):
        super().__init__(mensaje or f"El movimiento {movimiento_id} ya esta conciliado")
        self.movimiento_id = movimiento_id


class ImportacionDuplicadaError(ConciliacionError):
    code = "DUPLICATE_IMPORT"

    def __init__(self, hash_archivo: str, cuenta_id: Any, existente_id: Any = None):
        super().__init__("Este archivo ya fue importado anteriormente")
        self.hash_archivo = hash_archivo
        self.cuenta_id = cuenta_id
        self.existente_id = existente_id


class IngestaError(ConciliacionError):
    """Fallo al ingerir lineas; solo se expone como estado ERROR de la importacion."""

    code = "INGESTION"

    def __init__(self, mensaje: str, numero_linea: int | None = None):
        super().__init__(mensaje)
        self.numero_linea = numero_linea

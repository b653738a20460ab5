from __future__ import annotations
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Iterable, Optional
import re
import unicodedata

from sqlalchemy.orm import Session

from infra import repositorio
from infra.bd import FabricaSesiones, unidad_de_trabajo
from infra.config import ConciliacionConfig, PesosConfig
from infra.logger import get_logger
from infra.pasarela import PasarelaMovimientos
from logic.errores import EstadoInvalidoError
from logic.modelos import (
    EstadoExtracto, LineaExtracto, MovimientoTesoreria, Propuesta, etiqueta_confianza,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class Parametros:
    margen_dias: int = 10
    umbral_similitud: float = 0.3
    confianza_minima: int = 0
    pesos: PesosConfig = field(default_factory=PesosConfig)
    stopwords: frozenset[str] = frozenset()

    @classmethod
    def desde_config(cls, cfg: ConciliacionConfig) -> "Parametros":
        return cls(
            margen_dias=cfg.margen_dias,
            umbral_similitud=cfg.umbral_similitud,
            confianza_minima=cfg.confianza_minima,
            pesos=cfg.pesos,
            stopwords=frozenset(map(str.lower, cfg.stopwords or [])),
        )


# ==========================================================
# Similitud de conceptos
# ==========================================================
def _strip_accents(text: str) -> str:
    if not isinstance(text, str):
        return str(text)
    normalized = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in normalized if not unicodedata.combining(ch))


def tokens(texto: str, stopwords: Iterable[str] = ()) -> set[str]:
    """Tokens significativos: minusculas, sin tildes, sin stopwords ni tokens de 1 caracter."""
    stop = set(stopwords)
    s = _strip_accents((texto or "").lower())
    out = set()
    for t in re.split(r"[^0-9a-z]+", s):
        if len(t) <= 1 or t in stop:
            continue
        out.add(t)
    return out


def similitud_concepto(desc1: str, desc2: str, stopwords: Iterable[str] = ()) -> float:
    """Solapamiento de tokens (Jaccard) en [0, 1]."""
    t1, t2 = tokens(desc1, stopwords), tokens(desc2, stopwords)
    if not t1 or not t2:
        return 0.0
    return len(t1 & t2) / len(t1 | t2)


def _norm_ref(ref: Optional[str]) -> str:
    return re.sub(r"\s+", "", (ref or "")).upper()


# ==========================================================
# Puntuacion
# ==========================================================
def es_candidato(linea: LineaExtracto, mov: MovimientoTesoreria, margen_dias: int) -> bool:
    """Filtros duros: misma cuenta y sentido, importe exacto, fecha dentro del margen."""
    return (
        not mov.conciliado
        and mov.cuenta_id == linea.cuenta_id
        and mov.tipo == linea.tipo
        and mov.importe == linea.importe
        and abs((linea.fecha - mov.fecha).days) <= margen_dias
    )


def puntuar(linea: LineaExtracto, mov: MovimientoTesoreria, params: Parametros = Parametros()) -> Propuesta:
    pesos = params.pesos
    confianza = pesos.importe
    criterios = ["importe exacto"]

    # Fecha
    distancia = abs((linea.fecha - mov.fecha).days)
    if distancia == 0:
        confianza += pesos.fecha_exacta
        criterios.append("fecha exacta")
    elif distancia <= 3:
        confianza += pesos.fecha_cercana
        criterios.append(f"fecha cercana ({distancia} días)")
    elif distancia <= 7:
        confianza += pesos.fecha_proxima
        criterios.append(f"fecha próxima ({distancia} días)")

    # Referencia bancaria / codigo de operacion
    ref_mov = _norm_ref(mov.referencia)
    refs_linea = {r for r in (_norm_ref(linea.referencia_banco), _norm_ref(linea.codigo_operacion)) if r}
    if ref_mov and refs_linea:
        if ref_mov in refs_linea:
            confianza += pesos.referencia
            criterios.append("referencia coincide")
        elif any(ref_mov in r or r in ref_mov for r in refs_linea if min(len(r), len(ref_mov)) >= 3):
            confianza += pesos.referencia_parcial
            criterios.append("referencia parcial")

    # Concepto
    texto = linea.concepto or linea.concepto_original
    if mov.concepto:
        similitud = similitud_concepto(texto, mov.concepto, params.stopwords)
        if similitud > 0 and similitud >= params.umbral_similitud:
            confianza += pesos.concepto
            criterios.append("concepto similar")

    concepto_lower = _strip_accents(texto.lower())
    if mov.documento_numero and _strip_accents(mov.documento_numero.lower()) in concepto_lower:
        confianza += pesos.documento
        criterios.append("concepto contiene nº documento")

    if mov.tercero_nombre:
        primera = _strip_accents(mov.tercero_nombre.lower()).split(" ")[0]
        if len(primera) > 3 and primera in concepto_lower:
            confianza += pesos.tercero
            criterios.append("concepto contiene tercero")

    confianza = min(confianza, 100)
    return Propuesta(
        movimiento_id=mov.id,
        confianza=confianza,
        motivo=etiqueta_confianza(confianza),
        criterios=tuple(criterios),
        distancia_dias=distancia,
    )


def elegir_propuesta(
    linea: LineaExtracto,
    candidatos: Iterable[MovimientoTesoreria],
    params: Parametros = Parametros(),
    margen_dias: int | None = None,
) -> Propuesta | None:
    """Mejor propuesta: mayor confianza, luego menor distancia en dias, luego menor id."""
    margen = params.margen_dias if margen_dias is None else margen_dias
    propuestas = [
        puntuar(linea, mov, params)
        for mov in candidatos
        if es_candidato(linea, mov, margen)
    ]
    propuestas = [p for p in propuestas if p.confianza >= params.confianza_minima]
    if not propuestas:
        return None
    return min(propuestas, key=lambda p: (-p.confianza, p.distancia_dias, p.movimiento_id))


# ==========================================================
# Motor
# ==========================================================
class MotorConciliacion:
    """Propone, para cada linea PENDIENTE, el movimiento de tesoreria mas probable.

    Las propuestas no reclaman el movimiento: un mismo movimiento puede quedar
    sugerido en varias lineas hasta que una de ellas se apruebe.
    """

    def __init__(
        self,
        fabrica: FabricaSesiones,
        pasarela: PasarelaMovimientos,
        params: Parametros = Parametros(),
        recalcular: Callable[[int], object] | None = None,
    ):
        self.fabrica = fabrica
        self.pasarela = pasarela
        self.params = params
        self._recalcular = recalcular

    def buscar_candidatos(self, sesion: Session, linea: LineaExtracto, margen_dias: int) -> list[MovimientoTesoreria]:
        return self.pasarela.buscar(
            sesion,
            cuenta_id=linea.cuenta_id,
            tipo=linea.tipo,
            importe_min=linea.importe,
            importe_max=linea.importe,
            desde=linea.fecha - timedelta(days=margen_dias),
            hasta=linea.fecha + timedelta(days=margen_dias),
        )

    def _proponer(self, linea_id: int, margen_dias: int) -> LineaExtracto | None:
        with unidad_de_trabajo(self.fabrica) as sesion:
            linea = repositorio.obtener_linea(sesion, linea_id)
            # la importacion pudo cerrarse mientras corria el lote
            repositorio.obtener_importacion_abierta(sesion, linea.importacion_id)
            if linea.estado is not EstadoExtracto.PENDIENTE:
                return None
            dto = linea.to_dto()
            propuesta = elegir_propuesta(
                dto, self.buscar_candidatos(sesion, dto, margen_dias), self.params, margen_dias,
            )
            if propuesta is None:
                return None
            try:
                linea = repositorio.transicionar(
                    sesion, linea_id, EstadoExtracto.PENDIENTE, EstadoExtracto.SUGERIDO,
                    movimiento_id=propuesta.movimiento_id,
                    confianza=propuesta.confianza,
                    motivo=propuesta.motivo,
                    criterios=list(propuesta.criterios),
                )
            except EstadoInvalidoError as exc:
                # otra operacion movio la linea mientras se puntuaba
                logger.info("Linea %s omitida: %s", linea_id, exc)
                return None
            repositorio.registrar_evento(
                sesion, linea, "sugerir", EstadoExtracto.PENDIENTE,
                movimiento_id=propuesta.movimiento_id,
                confianza=propuesta.confianza,
                motivo=propuesta.motivo,
                criterios=propuesta.criterios,
                actor="sistema",
            )
            return linea.to_dto()

    def proponer_linea(self, linea_id: int, margen_dias: int | None = None) -> LineaExtracto | None:
        """Aplica el algoritmo a una sola linea. Devuelve la linea si quedo SUGERIDO."""
        margen = self.params.margen_dias if margen_dias is None else margen_dias
        sugerida = self._proponer(linea_id, margen)
        if sugerida is not None and self._recalcular is not None:
            self._recalcular(sugerida.importacion_id)
        return sugerida

    def ejecutar_lote(
        self,
        importacion_id: int,
        margen_dias: int | None = None,
        cancelado: Callable[[], bool] | None = None,
    ) -> list[LineaExtracto]:
        """Recorre las lineas PENDIENTE de la importacion y devuelve las que quedaron SUGERIDO.

        Cada linea se procesa en su propia transaccion y los contadores se
        recalculan tras cada sugerencia: si el lote se corta, las sugerencias ya
        escritas siguen siendo validas y el resto queda PENDIENTE. Si la
        importacion deja de estar EN_PROCESO a mitad del lote, este se detiene.
        """
        margen = self.params.margen_dias if margen_dias is None else margen_dias
        with unidad_de_trabajo(self.fabrica) as sesion:
            repositorio.obtener_importacion_abierta(sesion, importacion_id)
            pendientes = repositorio.ids_pendientes(sesion, importacion_id)

        sugeridas: list[LineaExtracto] = []
        for linea_id in pendientes:
            if cancelado is not None and cancelado():
                logger.warning(
                    "Matching de importacion %s cancelado tras %s/%s lineas",
                    importacion_id, len(sugeridas), len(pendientes),
                )
                break
            try:
                linea = self._proponer(linea_id, margen)
            except EstadoInvalidoError as exc:
                logger.warning("Matching de importacion %s detenido: %s", importacion_id, exc)
                break
            if linea is not None:
                sugeridas.append(linea)
                if self._recalcular is not None:
                    self._recalcular(importacion_id)

        logger.info(
            "Matching importacion %s: %s pendientes, %s sugeridas (margen %s dias)",
            importacion_id, len(pendientes), len(sugeridas), margen,
        )
        return sugeridas

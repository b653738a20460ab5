from __future__ import annotations
import os
import yaml
from dataclasses import dataclass, field
from pathlib import Path


DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"


@dataclass(frozen=True)
class AppConfig:
    nombre: str = "conciliador"
    nivel_log: str = "INFO"
    formato_log: str = "%(asctime)s | %(levelname)s | %(message)s"


@dataclass(frozen=True)
class BaseDatosConfig:
    url: str = "sqlite+pysqlite:///conciliador.db"
    echo: bool = False


@dataclass(frozen=True)
class PesosConfig:
    importe: int = 40
    fecha_exacta: int = 30
    fecha_cercana: int = 15
    fecha_proxima: int = 5
    referencia: int = 20
    referencia_parcial: int = 10
    concepto: int = 10
    documento: int = 15
    tercero: int = 10

    def criterios(self) -> dict[str, int]:
        """Pesos de los criterios puntuables (el importe es filtro, no criterio)."""
        return {
            "fecha_exacta": self.fecha_exacta,
            "fecha_cercana": self.fecha_cercana,
            "fecha_proxima": self.fecha_proxima,
            "referencia": self.referencia,
            "referencia_parcial": self.referencia_parcial,
            "concepto": self.concepto,
            "documento": self.documento,
            "tercero": self.tercero,
        }


@dataclass(frozen=True)
class ConciliacionConfig:
    margen_dias: int = 10
    umbral_similitud: float = 0.3
    confianza_minima: int = 0
    matching_al_importar: bool = False
    stopwords: list[str] = field(default_factory=list)
    pesos: PesosConfig = field(default_factory=PesosConfig)


@dataclass(frozen=True)
class PaginacionConfig:
    limite_defecto: int = 50
    limite_maximo: int = 500


@dataclass(frozen=True)
class LecturaConfig:
    columnas_fecha: list[str] = field(default_factory=lambda: ["fecha"])
    columnas_fecha_valor: list[str] = field(default_factory=lambda: ["fecha valor"])
    columnas_concepto: list[str] = field(default_factory=lambda: ["concepto", "descripcion"])
    columnas_importe: list[str] = field(default_factory=lambda: ["importe"])
    columnas_cargo: list[str] = field(default_factory=lambda: ["cargo", "debe"])
    columnas_abono: list[str] = field(default_factory=lambda: ["abono", "haber"])
    columnas_saldo: list[str] = field(default_factory=lambda: ["saldo"])
    columnas_referencia: list[str] = field(default_factory=lambda: ["referencia"])


@dataclass(frozen=True)
class Config:
    app: AppConfig = field(default_factory=AppConfig)
    base_datos: BaseDatosConfig = field(default_factory=BaseDatosConfig)
    conciliacion: ConciliacionConfig = field(default_factory=ConciliacionConfig)
    paginacion: PaginacionConfig = field(default_factory=PaginacionConfig)
    lectura: LecturaConfig = field(default_factory=LecturaConfig)


def _validar_pesos(pesos: PesosConfig) -> None:
    criterios = pesos.criterios()
    mayor = max(criterios.values())
    if criterios["fecha_exacta"] < mayor:
        raise ValueError(
            "El peso de 'fecha_exacta' debe ser el mayor de los criterios "
            f"(fecha_exacta={pesos.fecha_exacta}, maximo={mayor})"
        )
    if any(v < 0 for v in criterios.values()) or pesos.importe < 0:
        raise ValueError("Los pesos de conciliacion no pueden ser negativos")


def load_config(path: str | Path | None = None) -> Config:
    """Lee la configuracion YAML.

    Orden de resolucion: argumento, variable ``CONCILIADOR_CONFIG`` y
    ``config.yaml`` en la raiz del proyecto.
    """
    if path is None:
        path = os.environ.get("CONCILIADOR_CONFIG") or DEFAULT_CONFIG_PATH

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    conc_data = dict(data.get("conciliacion") or {})
    pesos = PesosConfig(**(conc_data.pop("pesos", None) or {}))
    conc = ConciliacionConfig(pesos=pesos, **conc_data)
    _validar_pesos(conc.pesos)

    return Config(
        app=AppConfig(**(data.get("app") or {})),
        base_datos=BaseDatosConfig(**(data.get("base_datos") or {})),
        conciliacion=conc,
        paginacion=PaginacionConfig(**(data.get("paginacion") or {})),
        lectura=LecturaConfig(**(data.get("lectura") or {})),
    )

import logging
from typing import Optional


RAIZ = "conciliador"

_raiz: Optional[logging.Logger] = None


def configurar_logging(nivel: str = "INFO",
                       formato: str = "%(asctime)s | %(levelname)s | %(message)s") -> logging.Logger:
    """Instala el handler de consola una sola vez sobre el logger raiz del proyecto."""
    global _raiz
    logger = logging.getLogger(RAIZ)
    logger.setLevel(nivel)

    if _raiz is None:
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(formato))
        logger.addHandler(ch)
        _raiz = logger
    else:
        for handler in logger.handlers:
            handler.setFormatter(logging.Formatter(formato))
    return logger


def get_logger(name: str = RAIZ) -> logging.Logger:
    if _raiz is None:
        configurar_logging()
    if name == RAIZ or name.startswith(RAIZ + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{RAIZ}.{name}")

import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

# Cargar variables desde backend/.env (independiente del CWD) y luego del CWD
_ENV_PATH = (Path(__file__).resolve().parents[1] / '.env')

_settings: Optional['Settings'] = None


@dataclass(frozen=True)
class Settings:
    tamano_pagina: int = 100
    intervalo_polling: float = 5.0
    max_espera: float = 300.0
    log_level: str = 'INFO'


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, '').strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f'{name} debe ser un entero, se recibió {raw!r}')


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, '').strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f'{name} debe ser numérico, se recibió {raw!r}')


def get_settings() -> Settings:
    """Devuelve la configuración (cacheada) leída del entorno.

    Variables: CSREPORTER_TAMANO_PAGINA, SAT_POLL_INTERVAL, SAT_MAX_WAIT,
    CSREPORTER_LOG_LEVEL.
    """
    global _settings
    if _settings is None:
        load_dotenv(dotenv_path=_ENV_PATH, override=False)
        load_dotenv(override=False)
        tamano = _env_int('CSREPORTER_TAMANO_PAGINA', 100)
        if tamano < 1:
            raise ValueError('CSREPORTER_TAMANO_PAGINA debe ser >= 1')
        _settings = Settings(
            tamano_pagina=tamano,
            intervalo_polling=_env_float('SAT_POLL_INTERVAL', 5.0),
            max_espera=_env_float('SAT_MAX_WAIT', 300.0),
            log_level=os.environ.get('CSREPORTER_LOG_LEVEL', 'INFO').strip().upper() or 'INFO',
        )
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or get_settings().log_level),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )

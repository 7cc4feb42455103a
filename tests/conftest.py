from datetime import datetime

import pytest

from csreporter.config import reset_settings
from csreporter.services.consulta import Consulta
from csreporter.services.parametros import Parametros, SatKind

from _fakes import RFC


@pytest.fixture(autouse=True)
def clean_settings(monkeypatch):
    """Cada prueba lee la configuración desde cero."""
    for name in ('CSREPORTER_TAMANO_PAGINA', 'SAT_POLL_INTERVAL', 'SAT_MAX_WAIT', 'CSREPORTER_LOG_LEVEL'):
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def parametros():
    return Parametros(
        rfc=RFC,
        fecha_inicial=datetime(2024, 1, 1, 0, 0),
        fecha_final=datetime(2024, 1, 31, 23, 59, 59),
        tipo=SatKind.recibidos,
    )


@pytest.fixture
def consulta(parametros):
    return Consulta(parametros, tamano_pagina=2)

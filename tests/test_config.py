"""
Pruebas de la configuración por entorno.

Run with: pytest tests/test_config.py -v
"""

import logging

import pytest

from csreporter.config import configure_logging, get_settings, reset_settings


def test_defaults():
    s = get_settings()
    assert s.tamano_pagina == 100
    assert s.intervalo_polling == 5.0
    assert s.max_espera == 300.0
    assert s.log_level == 'INFO'


def test_env_overrides(monkeypatch):
    monkeypatch.setenv('CSREPORTER_TAMANO_PAGINA', '25')
    monkeypatch.setenv('SAT_POLL_INTERVAL', '0.5')
    monkeypatch.setenv('SAT_MAX_WAIT', '60')
    monkeypatch.setenv('CSREPORTER_LOG_LEVEL', 'debug')
    s = get_settings()
    assert (s.tamano_pagina, s.intervalo_polling, s.max_espera, s.log_level) == (25, 0.5, 60.0, 'DEBUG')


def test_invalid_integer_names_variable(monkeypatch):
    monkeypatch.setenv('CSREPORTER_TAMANO_PAGINA', 'cien')
    with pytest.raises(ValueError, match='CSREPORTER_TAMANO_PAGINA'):
        get_settings()


def test_invalid_float_names_variable(monkeypatch):
    monkeypatch.setenv('SAT_MAX_WAIT', '5 min')
    with pytest.raises(ValueError, match='SAT_MAX_WAIT'):
        get_settings()


def test_page_size_must_be_positive(monkeypatch):
    monkeypatch.setenv('CSREPORTER_TAMANO_PAGINA', '0')
    with pytest.raises(ValueError, match='>= 1'):
        get_settings()


def test_cached_until_reset(monkeypatch):
    first = get_settings()
    monkeypatch.setenv('CSREPORTER_TAMANO_PAGINA', '10')
    assert get_settings() is first
    reset_settings()
    assert get_settings().tamano_pagina == 10


def test_configure_logging(monkeypatch):
    calls = []
    monkeypatch.setattr(logging, 'basicConfig', lambda **kw: calls.append(kw))
    monkeypatch.setenv('CSREPORTER_LOG_LEVEL', 'WARNING')
    configure_logging()
    configure_logging('DEBUG')
    assert [c['level'] for c in calls] == ['WARNING', 'DEBUG']

"""
Pruebas de Parametros y validación de RFC.

Run with: pytest tests/test_parametros.py -v
"""

from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from csreporter.services.parametros import Parametros, SatKind, StatusCFDI
from csreporter.utils.rfc import classify_rfc, validate_rfc

from _fakes import RFC, RFC_CONTRAPARTE


class TestRfc:

    def test_persona_moral(self):
        info = classify_rfc(' aaa010101aaa ')
        assert info.valid
        assert info.normalized == 'AAA010101AAA'
        assert info.persona_moral is True

    def test_persona_fisica(self):
        info = classify_rfc(RFC_CONTRAPARTE)
        assert info.valid
        assert info.persona_moral is False

    def test_generic_rfc(self):
        assert classify_rfc('XAXX010101000').valid

    @pytest.mark.parametrize('rfc,error', [
        ('', 'vacío'),
        (None, 'vacío'),
        ('AAA01010AAA', 'patrón inválido'),
        ('A1A010101AAA', 'patrón inválido'),
        ('AAA011301AAA', 'fecha inválida'),
    ])
    def test_invalid(self, rfc, error):
        info = classify_rfc(rfc)
        assert not info.valid
        assert info.error == error

    def test_validate_raises(self):
        with pytest.raises(ValueError, match='RFC inválido'):
            validate_rfc('NOPE')


class TestParametros:

    def test_normalizes_rfcs(self, parametros):
        p = Parametros(
            rfc=RFC.lower(),
            fecha_inicial=datetime(2024, 1, 1),
            fecha_final=datetime(2024, 1, 2),
            rfc_busqueda=RFC_CONTRAPARTE.lower(),
        )
        assert p.rfc == RFC
        assert p.rfc_busqueda == RFC_CONTRAPARTE
        assert p.tipo is SatKind.recibidos
        assert p.status is StatusCFDI.TODOS

    def test_blank_rfc_busqueda_is_none(self):
        p = Parametros(rfc=RFC, fecha_inicial=datetime(2024, 1, 1), fecha_final=datetime(2024, 1, 2), rfc_busqueda='  ')
        assert p.rfc_busqueda is None

    def test_invalid_rfc(self):
        with pytest.raises(ValidationError):
            Parametros(rfc='XYZ', fecha_inicial=datetime(2024, 1, 1), fecha_final=datetime(2024, 1, 2))

    def test_range_order(self):
        with pytest.raises(ValidationError, match='fecha_inicial'):
            Parametros(rfc=RFC, fecha_inicial=datetime(2024, 2, 1), fecha_final=datetime(2024, 1, 1))

    def test_is_frozen(self, parametros):
        with pytest.raises(ValidationError):
            parametros.rfc = RFC_CONTRAPARTE
        assert parametros.rfc == RFC

    def test_is_hashable_value(self, parametros):
        copia = parametros.con_rango(parametros.fecha_inicial, parametros.fecha_final)
        assert copia == parametros
        assert hash(copia) == hash(parametros)

    def test_dividir_covers_window_without_overlap(self, parametros):
        partes = parametros.dividir(4)
        assert len(partes) == 4
        assert partes[0].fecha_inicial == parametros.fecha_inicial
        assert partes[-1].fecha_final == parametros.fecha_final
        for prev, nxt in zip(partes, partes[1:]):
            assert nxt.fecha_inicial == prev.fecha_final + timedelta(seconds=1)
        assert all(p.rfc == parametros.rfc and p.tipo == parametros.tipo for p in partes)

    def test_dividir_one_minute_granularity(self):
        p = Parametros(rfc=RFC, fecha_inicial=datetime(2024, 1, 1, 10, 0), fecha_final=datetime(2024, 1, 1, 10, 2))
        a, b = p.dividir(2)
        assert a.fecha_final == datetime(2024, 1, 1, 10, 0, 59)
        assert b.fecha_inicial == datetime(2024, 1, 1, 10, 1)

    def test_dividir_too_narrow(self):
        p = Parametros(rfc=RFC, fecha_inicial=datetime(2024, 1, 1, 10, 0), fecha_final=datetime(2024, 1, 1, 10, 0, 59))
        with pytest.raises(ValueError, match='angosto'):
            p.dividir(2)

    def test_dividir_requires_two_parts(self, parametros):
        with pytest.raises(ValueError):
            parametros.dividir(1)

"""
Pruebas de CFDIMeta: parseo de Metadata y XML, extensiones.

Run with: pytest tests/test_cfdi_meta.py -v
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

import pytest

from csreporter.services.cfdi_meta import (
    CFDIMeta,
    CFDIMetaLike,
    Efecto,
    EstatusCFDI,
    parse_metadata_listing,
)

from _fakes import make_cfdi

UUID_1 = '5FB2822E-396D-4725-8521-CDC4BDD20CCF'
UUID_2 = 'A1B2C3D4-0000-4000-8000-0123456789AB'

CFDI_XML = f'''<?xml version="1.0" encoding="UTF-8"?>
<cfdi:Comprobante xmlns:cfdi="http://www.sat.gob.mx/cfd/4" Version="4.0"
    Fecha="2024-01-15T10:30:00" SubTotal="100.00" Total="116.00" TipoDeComprobante="I">
  <cfdi:Emisor Rfc="gode561231gr8" Nombre="EMISOR PRUEBA" RegimenFiscal="601"/>
  <cfdi:Receptor Rfc="AAA010101AAA" Nombre="RECEPTOR PRUEBA" UsoCFDI="G03"/>
  <cfdi:Complemento>
    <tfd:TimbreFiscalDigital xmlns:tfd="http://www.sat.gob.mx/TimbreFiscalDigital"
        Version="1.1" UUID="{UUID_1}" FechaTimbrado="2024-01-15T10:31:02" RfcProvCertif="SAT970701NN3"/>
  </cfdi:Complemento>
</cfdi:Comprobante>'''

METADATA = (
    'Uuid~RfcEmisor~NombreEmisor~RfcReceptor~NombreReceptor~RfcPac~FechaEmision~'
    'FechaCertificacionSat~Monto~EfectoComprobante~Estatus~FechaCancelacion\r\n'
    f'{UUID_1}~GODE561231GR8~EMISOR PRUEBA~AAA010101AAA~RECEPTOR PRUEBA~SAT970701NN3~'
    '2024-01-15 10:30:00~2024-01-15 10:31:02~116.00~I~1~\r\n'
    '\r\n'
    f'{UUID_2}~GODE561231GR8~EMISOR PRUEBA~AAA010101AAA~RECEPTOR PRUEBA~SAT970701NN3~'
    '2024-01-16 09:00:00~2024-01-16 09:00:10~58.00~E~0~2024-01-20 08:00:00\r\n'
)


@dataclass(frozen=True)
class CFDIPersistible(CFDIMeta):
    empresa_id: Optional[str] = None
    xml_ref: Optional[str] = None


# =============================================================================
# METADATA
# =============================================================================

class TestMetadata:

    def test_parse_listing(self):
        items = parse_metadata_listing(METADATA)
        assert len(items) == 2
        vigente, cancelado = items
        assert vigente.folio == uuid.UUID(UUID_1)
        assert vigente.emisor_rfc == 'GODE561231GR8'
        assert vigente.receptor_nombre == 'RECEPTOR PRUEBA'
        assert vigente.fecha_emision == datetime(2024, 1, 15, 10, 30)
        assert vigente.total == Decimal('116.00')
        assert vigente.efecto is Efecto.INGRESO
        assert vigente.estatus is EstatusCFDI.VIGENTE
        assert vigente.fecha_cancelacion is None
        assert vigente.tiene_xml()

        assert cancelado.efecto is Efecto.EGRESO
        assert cancelado.is_cancelado()
        assert not cancelado.tiene_xml()
        assert cancelado.fecha_cancelacion == datetime(2024, 1, 20, 8, 0)

    def test_row_without_cancel_column(self):
        row = f'{UUID_1}~GODE561231GR8~E~AAA010101AAA~R~SAT970701NN3~2024-01-15 10:30:00~~10~P~1'
        meta = CFDIMeta.from_metadata_row(row)
        assert meta.efecto is Efecto.PAGO
        assert meta.fecha_certificacion is None
        assert meta.fecha_cancelacion is None

    @pytest.mark.parametrize('row', [
        'solo~tres~campos',
        'no-uuid~A~B~C~D~E~2024-01-15 10:30:00~~10~I~1~',
        f'{UUID_1}~A~B~C~D~E~ayer~~10~I~1~',
        f'{UUID_1}~A~B~C~D~E~2024-01-15 10:30:00~~diez~I~1~',
        f'{UUID_1}~A~B~C~D~E~2024-01-15 10:30:00~~10~X~1~',
    ])
    def test_malformed_rows(self, row):
        with pytest.raises(ValueError):
            CFDIMeta.from_metadata_row(row)


# =============================================================================
# XML
# =============================================================================

class TestXML:

    def test_from_xml(self):
        meta = CFDIMeta.from_xml(CFDI_XML)
        assert meta.folio == uuid.UUID(UUID_1)
        assert meta.emisor_rfc == 'GODE561231GR8'
        assert meta.emisor_nombre == 'EMISOR PRUEBA'
        assert meta.receptor_rfc == 'AAA010101AAA'
        assert meta.pac_rfc == 'SAT970701NN3'
        assert meta.fecha_emision == datetime(2024, 1, 15, 10, 30)
        assert meta.fecha_certificacion == datetime(2024, 1, 15, 10, 31, 2)
        assert meta.total == Decimal('116.00')
        assert meta.estatus is EstatusCFDI.VIGENTE

    def test_from_xml_bytes(self):
        assert CFDIMeta.from_xml(CFDI_XML.encode('utf-8')).folio == uuid.UUID(UUID_1)

    def test_xml_without_timbre(self):
        xml = '<cfdi:Comprobante xmlns:cfdi="http://www.sat.gob.mx/cfd/4" Fecha="2024-01-15T10:30:00"/>'
        with pytest.raises(ValueError, match='UUID'):
            CFDIMeta.from_xml(xml)

    def test_invalid_xml(self):
        with pytest.raises(ValueError):
            CFDIMeta.from_xml('<no-cerrado>')


# =============================================================================
# EXTENSIONES
# =============================================================================

class TestExtensiones:

    def test_from_meta_copies_base_fields(self):
        base = make_cfdi(3)
        registro = CFDIPersistible.from_meta(base, empresa_id='EMP-1')
        assert isinstance(registro, CFDIPersistible)
        assert registro.folio == base.folio
        assert registro.fecha_emision == base.fecha_emision
        assert registro.empresa_id == 'EMP-1'
        assert registro.xml_ref is None

    def test_protocol(self):
        assert isinstance(make_cfdi(0), CFDIMetaLike)
        assert isinstance(CFDIPersistible.from_meta(make_cfdi(0)), CFDIMetaLike)
        assert not isinstance(uuid.uuid4(), CFDIMetaLike)
        assert not isinstance('folio', CFDIMetaLike)

    def test_is_immutable(self):
        with pytest.raises(Exception):
            make_cfdi(0).total = Decimal('1')

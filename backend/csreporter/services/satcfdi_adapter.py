import base64
import io
import logging
import uuid
import zipfile
from typing import Any, Dict, List, Optional, Tuple
from .cfdi_meta import CFDIMeta, parse_metadata_listing
from .parametros import Parametros, SatKind, StatusCFDI
from .portal import (
    CODIGO_ACEPTADA,
    CODIGO_SIN_INFORMACION,
    CODIGOS_AUTENTICACION,
    EstadoSolicitud,
    PortalAutenticacionError,
    PortalError,
    PortalSAT,
    Verificacion,
    error_por_codigo,
)

logger = logging.getLogger(__name__)

# satcfdi usa '1' vigente / '0' cancelado en estado_comprobante
_ESTADO_COMPROBANTE = {
    StatusCFDI.TODOS: None,
    StatusCFDI.VIGENTE: '1',
    StatusCFDI.CANCELADO: '0',
}


def parse_zip_cfdis(b64data: str) -> Tuple[List[CFDIMeta], Dict[uuid.UUID, str]]:
    """Decodifica un paquete ZIP (base64) del SAT.

    Los .xml se parsean como CFDI (metadatos + XML); los .txt como listado de
    Metadata. Devuelve (metadatos, xml_por_folio).
    """
    try:
        raw = base64.b64decode(b64data)
        zf = zipfile.ZipFile(io.BytesIO(raw))
    except (ValueError, zipfile.BadZipFile) as e:
        raise PortalError(f'Paquete inválido o corrupto: {e}')

    metas: List[CFDIMeta] = []
    xmls: Dict[uuid.UUID, str] = {}
    for name in zf.namelist():
        lower = name.lower()
        data = zf.read(name)
        if lower.endswith('.xml'):
            try:
                meta = CFDIMeta.from_xml(data)
            except ValueError as e:
                logger.warning('Se omite %s del paquete: %s', name, e)
                continue
            metas.append(meta)
            xmls[meta.folio] = data.decode('utf-8', errors='ignore')
        elif lower.endswith('.txt'):
            try:
                metas.extend(parse_metadata_listing(data.decode('utf-8', errors='ignore')))
            except ValueError as e:
                raise PortalError(f'Listado de metadata inválido en {name}: {e}')
    return metas, xmls


class SatCfdiPortal(PortalSAT):
    """Portal del SAT (Descarga Masiva) sobre la librería satcfdi.

    `sat` es una instancia de `satcfdi.pacs.sat.SAT` ya firmada; maneja sus
    propios tokens de autenticación.
    """

    def __init__(self, sat: Any, tipo_solicitud: str = 'CFDI') -> None:
        self.sat = sat
        self.tipo_solicitud = tipo_solicitud
        # id_solicitud -> folio -> XML
        self._xmls: Dict[str, Dict[uuid.UUID, str]] = {}

    @classmethod
    def desde_efirma(cls, cer_bytes: bytes, key_bytes: bytes, passphrase: Optional[str], **kwargs) -> 'SatCfdiPortal':
        """Construye el portal a partir de la e.firma (.cer DER o PEM, .key DER)."""
        from cryptography import x509
        from cryptography.hazmat.primitives.serialization import Encoding
        from satcfdi.models import Signer  # type: ignore
        from satcfdi.pacs.sat import SAT  # type: ignore

        try:
            cert = x509.load_der_x509_certificate(cer_bytes)
        except ValueError:
            cert = x509.load_pem_x509_certificate(cer_bytes)
        # Normalizar passphrase: quitar BOM / saltos de línea accidentales
        if passphrase is not None:
            passphrase = passphrase.replace('\ufeff', '').strip('\r\n')
        signer = Signer.load(
            certificate=cert.public_bytes(Encoding.DER),
            key=key_bytes,
            password=passphrase.encode('utf-8') if passphrase else None,
        )
        return cls(SAT(signer=signer), **kwargs)

    def _call(self, what: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except PortalError:
            raise
        except Exception as e:
            raise PortalError(f'SATCFDI {what} falló: {e}') from e

    def solicitar(self, parametros: Parametros) -> str:
        kwargs: Dict[str, Any] = {
            'fecha_inicial': parametros.fecha_inicial,
            'fecha_final': parametros.fecha_final,
            'tipo_solicitud': self.tipo_solicitud,
            'estado_comprobante': _ESTADO_COMPROBANTE[parametros.status],
        }
        if parametros.tipo == SatKind.emitidos:
            kwargs['rfc_emisor'] = parametros.rfc
            if parametros.rfc_busqueda:
                kwargs['rfc_receptor'] = parametros.rfc_busqueda
            res = self._call('solicitud', self.sat.recover_comprobante_emitted_request, **kwargs)
        else:
            kwargs['rfc_receptor'] = parametros.rfc
            if parametros.rfc_busqueda:
                kwargs['rfc_emisor'] = parametros.rfc_busqueda
            res = self._call('solicitud', self.sat.recover_comprobante_received_request, **kwargs)

        res = res or {}
        req_id = res.get('IdSolicitud')
        cod = str(res.get('CodEstatus') or '')
        msg = res.get('Mensaje')
        if cod in CODIGOS_AUTENTICACION:
            raise error_por_codigo(cod, msg)
        if not req_id or (cod and cod not in (CODIGO_ACEPTADA, CODIGO_SIN_INFORMACION)):
            raise error_por_codigo(cod, msg)
        logger.info('Solicitud %s aceptada (%s %s a %s)', req_id, parametros.tipo.value,
                    parametros.fecha_inicial.isoformat(), parametros.fecha_final.isoformat())
        return str(req_id)

    def verificar(self, id_solicitud: str) -> Verificacion:
        res = self._call('verificación', self.sat.recover_comprobante_status, id_solicitud) or {}
        cod_estatus = str(res.get('CodEstatus') or '')
        if cod_estatus in CODIGOS_AUTENTICACION:
            raise PortalAutenticacionError(
                f'SAT rechazó la verificación ({cod_estatus}): {res.get("Mensaje") or "sin mensaje"}',
                codigo=cod_estatus,
            )
        try:
            estado = EstadoSolicitud(int(res.get('EstadoSolicitud')))
        except (TypeError, ValueError):
            raise PortalError(f'EstadoSolicitud desconocido: {res.get("EstadoSolicitud")!r}')
        paquetes = res.get('IdsPaquetes') or []
        if isinstance(paquetes, str):
            paquetes = [p.strip() for p in paquetes.split(',') if p.strip()]
        total = res.get('NumeroCFDIs')
        try:
            total = int(total) if total not in (None, '') else None
        except (TypeError, ValueError):
            raise PortalError(f'NumeroCFDIs inválido: {total!r}')
        return Verificacion(
            estado=estado,
            codigo=str(res.get('CodigoEstadoSolicitud') or cod_estatus or '') or None,
            mensaje=res.get('Mensaje'),
            total=total,
            paquetes=[str(p) for p in paquetes],
        )

    def descargar_metadata(self, id_solicitud: str, paquetes: List[str]) -> List[CFDIMeta]:
        vistos: Dict[uuid.UUID, CFDIMeta] = {}
        cache = self._xmls.setdefault(id_solicitud, {})
        for paquete_id in paquetes:
            header, b64data = self._call('descarga', self.sat.recover_comprobante_download, paquete_id)
            if not b64data:
                raise PortalError(f'El SAT no devolvió contenido para el paquete {paquete_id}')
            metas, xmls = parse_zip_cfdis(b64data)
            for meta in metas:
                vistos.setdefault(meta.folio, meta)
            cache.update(xmls)
            logger.debug('Paquete %s de la solicitud %s: %s CFDIs', paquete_id, id_solicitud, len(metas))
        return list(vistos.values())

    def descargar_xml(self, id_solicitud: str, cfdi: CFDIMeta) -> Optional[str]:
        return self._xmls.get(id_solicitud, {}).get(cfdi.folio)

    def liberar(self, id_solicitud: str) -> None:
        if self._xmls.pop(id_solicitud, None) is not None:
            logger.debug('XMLs de la solicitud %s liberados', id_solicitud)

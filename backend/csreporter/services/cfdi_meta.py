import uuid
from dataclasses import dataclass, fields
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import List, Optional, Protocol, Type, TypeVar, Union, runtime_checkable
from lxml import etree

T = TypeVar('T', bound='CFDIMeta')


class Efecto(str, Enum):
    INGRESO = 'I'
    EGRESO = 'E'
    TRASLADO = 'T'
    NOMINA = 'N'
    PAGO = 'P'


class EstatusCFDI(str, Enum):
    VIGENTE = 'VIGENTE'
    CANCELADO = 'CANCELADO'


@runtime_checkable
class CFDIMetaLike(Protocol):
    """Capacidad común a cualquier representación de un CFDI: tiene folio y
    los datos descriptivos básicos."""
    folio: uuid.UUID
    emisor_rfc: str
    receptor_rfc: str
    fecha_emision: datetime
    total: Decimal


@dataclass(frozen=True)
class CFDIMeta:
    """Metadatos de un CFDI tal como los reporta el portal del SAT.

    `folio` es el UUID del timbre fiscal del documento (distinto del folio de
    la consulta). Las extensiones (p.ej. modelos para persistir) heredan de
    esta clase y se construyen con `from_meta`.
    """
    folio: uuid.UUID
    emisor_rfc: str
    receptor_rfc: str
    fecha_emision: datetime
    total: Decimal
    emisor_nombre: Optional[str] = None
    receptor_nombre: Optional[str] = None
    pac_rfc: Optional[str] = None
    fecha_certificacion: Optional[datetime] = None
    efecto: Efecto = Efecto.INGRESO
    estatus: EstatusCFDI = EstatusCFDI.VIGENTE
    fecha_cancelacion: Optional[datetime] = None

    def is_cancelado(self) -> bool:
        return self.estatus == EstatusCFDI.CANCELADO

    def tiene_xml(self) -> bool:
        # El SAT no entrega XML de comprobantes cancelados
        return not self.is_cancelado()

    @classmethod
    def from_meta(cls: Type[T], meta: 'CFDIMeta', **extra) -> T:
        """Construye la clase receptora a partir de metadatos base.

        Sirve como factory para `Consulta.get_resultados(pagina, Clase.from_meta)`.
        """
        base = {f.name: getattr(meta, f.name) for f in fields(CFDIMeta)}
        base.update(extra)
        return cls(**base)

    @classmethod
    def from_metadata_row(cls, row: str) -> 'CFDIMeta':
        """Parsea un renglón del listado de Metadata del SAT (separado por '~').

        Uuid~RfcEmisor~NombreEmisor~RfcReceptor~NombreReceptor~RfcPac~
        FechaEmision~FechaCertificacionSat~Monto~EfectoComprobante~Estatus~
        FechaCancelacion
        """
        parts = [p.strip() for p in row.rstrip('\r\n').split('~')]
        if len(parts) < 11:
            raise ValueError(f'Renglón de metadata incompleto ({len(parts)} campos): {row!r}')
        try:
            folio = uuid.UUID(parts[0])
        except ValueError:
            raise ValueError(f'UUID inválido en metadata: {parts[0]!r}')
        estatus = EstatusCFDI.CANCELADO if parts[10] in ('0', 'Cancelado', 'CANCELADO') else EstatusCFDI.VIGENTE
        return cls(
            folio=folio,
            emisor_rfc=parts[1].upper(),
            emisor_nombre=parts[2] or None,
            receptor_rfc=parts[3].upper(),
            receptor_nombre=parts[4] or None,
            pac_rfc=parts[5].upper() or None,
            fecha_emision=_parse_fecha(parts[6], required=True),
            fecha_certificacion=_parse_fecha(parts[7]),
            total=_parse_decimal(parts[8]),
            efecto=_parse_efecto(parts[9]),
            estatus=estatus,
            fecha_cancelacion=_parse_fecha(parts[11]) if len(parts) > 11 else None,
        )

    @classmethod
    def from_xml(cls, xml: Union[str, bytes]) -> 'CFDIMeta':
        """Extrae los metadatos de un CFDI 3.3/4.0 a partir de su XML."""
        data = xml.encode('utf-8') if isinstance(xml, str) else xml
        try:
            root = etree.fromstring(data.strip())
        except etree.XMLSyntaxError as e:
            raise ValueError(f'XML de CFDI inválido: {e}')

        def first(name: str):
            nodes = root.xpath(f'//*[local-name()="{name}"]')
            return nodes[0] if nodes else None

        tfd = first('TimbreFiscalDigital')
        uid = tfd.get('UUID') if tfd is not None else None
        if not uid:
            raise ValueError('El CFDI no contiene UUID de TimbreFiscalDigital')
        emisor = first('Emisor')
        receptor = first('Receptor')
        return cls(
            folio=uuid.UUID(uid),
            emisor_rfc=(emisor.get('Rfc', '') if emisor is not None else '').upper(),
            emisor_nombre=emisor.get('Nombre') if emisor is not None else None,
            receptor_rfc=(receptor.get('Rfc', '') if receptor is not None else '').upper(),
            receptor_nombre=receptor.get('Nombre') if receptor is not None else None,
            pac_rfc=tfd.get('RfcProvCertif'),
            fecha_emision=_parse_fecha(root.get('Fecha', ''), required=True),
            fecha_certificacion=_parse_fecha(tfd.get('FechaTimbrado', '')),
            total=_parse_decimal(root.get('Total', '0')),
            efecto=_parse_efecto(root.get('TipoDeComprobante', 'I')),
        )


def parse_metadata_listing(text: str) -> List[CFDIMeta]:
    """Parsea el archivo de Metadata completo; ignora encabezado y líneas vacías."""
    out: List[CFDIMeta] = []
    for line in text.splitlines():
        if not line.strip() or line.lower().startswith('uuid~'):
            continue
        out.append(CFDIMeta.from_metadata_row(line))
    return out


def _parse_fecha(value: str, required: bool = False) -> Optional[datetime]:
    value = (value or '').strip()
    if not value:
        if required:
            raise ValueError('Fecha requerida vacía')
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise ValueError(f'Fecha inválida: {value!r}')


def _parse_decimal(value: str) -> Decimal:
    try:
        return Decimal((value or '0').strip() or '0')
    except InvalidOperation:
        raise ValueError(f'Monto inválido: {value!r}')


def _parse_efecto(value: str) -> Efecto:
    letra = (value or 'I').strip()[:1].upper()
    try:
        return Efecto(letra)
    except ValueError:
        raise ValueError(f'Efecto de comprobante desconocido: {value!r}')

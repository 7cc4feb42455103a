from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
from .cfdi_meta import CFDIMeta
from .parametros import Parametros

# Códigos del servicio de Descarga Masiva del SAT
CODIGOS_AUTENTICACION = frozenset({'300', '301', '302', '303', '304', '305'})
CODIGO_ACEPTADA = '5000'
CODIGO_TOPE_MAXIMO = '5003'
CODIGO_SIN_INFORMACION = '5004'
CODIGO_LIMITE_DIARIO = '5011'

MENSAJES = {
    '300': 'Usuario no válido',
    '301': 'XML mal formado',
    '302': 'Sello mal formado',
    '303': 'Sello no corresponde con RfcSolicitante',
    '304': 'Certificado revocado o caduco',
    '305': 'Certificado inválido',
    '5000': 'Solicitud recibida con éxito',
    '5003': 'Tope máximo de elementos de la consulta',
    '5004': 'No se encontró la información',
    '5011': 'Límite de descargas por folio por día',
}


class PortalError(RuntimeError):
    def __init__(self, message: str, codigo: Optional[str] = None):
        self.codigo = codigo
        super().__init__(message)


class PortalAutenticacionError(PortalError):
    pass


def error_por_codigo(codigo: Optional[str], mensaje: Optional[str] = None) -> PortalError:
    cod = str(codigo or '')
    texto = mensaje or MENSAJES.get(cod) or 'sin mensaje'
    cls = PortalAutenticacionError if cod in CODIGOS_AUTENTICACION else PortalError
    return cls(f'SAT reportó código {cod or "N/A"}: {texto}', codigo=cod or None)


class EstadoSolicitud(int, Enum):
    ACEPTADA = 1
    EN_PROCESO = 2
    TERMINADA = 3
    ERROR = 4
    RECHAZADA = 5
    VENCIDA = 6


@dataclass
class Verificacion:
    estado: EstadoSolicitud
    codigo: Optional[str] = None
    mensaje: Optional[str] = None
    total: Optional[int] = None
    paquetes: List[str] = field(default_factory=list)


class PortalSAT(ABC):
    """Transporte hacia el portal del SAT. El servicio de descarga lo usa como
    caja negra; cualquier error de red o de protocolo se reporta con
    PortalError (PortalAutenticacionError si el SAT rechazó las credenciales).
    """

    @abstractmethod
    def solicitar(self, parametros: Parametros) -> str:
        """Envía la solicitud y devuelve el id asignado por el portal."""

    @abstractmethod
    def verificar(self, id_solicitud: str) -> Verificacion:
        """Consulta el estado de una solicitud."""

    @abstractmethod
    def descargar_metadata(self, id_solicitud: str, paquetes: List[str]) -> List[CFDIMeta]:
        """Descarga los metadatos de todos los paquetes de la solicitud."""

    @abstractmethod
    def descargar_xml(self, id_solicitud: str, cfdi: CFDIMeta) -> Optional[str]:
        """Devuelve el XML del CFDI o None si el portal no lo entregó."""

    def liberar(self, id_solicitud: str) -> None:
        """Olvida lo que el portal guarde de la solicitud (paquetes, XMLs)."""

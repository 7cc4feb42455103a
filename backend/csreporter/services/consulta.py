import logging
import math
import threading
import uuid
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple, TypeVar, Union
from .cfdi_meta import CFDIMeta, CFDIMetaLike
from .parametros import Parametros

logger = logging.getLogger(__name__)

T = TypeVar('T')

FolioLike = Union[uuid.UUID, str]
XMLFetcher = Callable[[CFDIMeta], Optional[str]]


class ConsultaError(RuntimeError):
    pass


class ResultadosInsuficientesError(ConsultaError):
    """La página solicitada no está disponible (todavía o nunca)."""

    def __init__(self, pagina: int, paginas: int, message: Optional[str] = None):
        self.pagina = pagina
        self.paginas = paginas
        super().__init__(message or f'Página {pagina} no disponible (páginas: {paginas})')


class XMLNoEncontradoError(ConsultaError):
    """Se esperaba un XML pero no se pudo obtener."""

    def __init__(self, folio: FolioLike, message: Optional[str] = None):
        self.folio = folio
        super().__init__(message or f'No se encontró el XML del CFDI {folio}')


class TransicionInvalidaError(ConsultaError, ValueError):
    pass


class Status(str, Enum):
    """Status posibles de una consulta.

    EN_ESPERA: la petición está en cola. EN_PROCESO: el portal está contando
    resultados. DESCARGANDO: ya se tiene el total, se descargan los XMLs.
    FALLO_AUTENTICACION: el portal rechazó las credenciales.
    FALLO_500_MISMO_HORARIO: más de 500 resultados en el mismo minuto; hay
    que dividir el rango de fechas. FALLO: otros errores. COMPLETADO: todo
    descargado. COMPLETADO_CON_FALTANTES: metadata completa pero faltaron
    XMLs. REPETIR: la consulta debe descartarse y volver a solicitarse.
    """
    EN_ESPERA = 'EN_ESPERA'
    EN_PROCESO = 'EN_PROCESO'
    DESCARGANDO = 'DESCARGANDO'
    FALLO_AUTENTICACION = 'FALLO_AUTENTICACION'
    FALLO_500_MISMO_HORARIO = 'FALLO_500_MISMO_HORARIO'
    FALLO = 'FALLO'
    COMPLETADO = 'COMPLETADO'
    COMPLETADO_CON_FALTANTES = 'COMPLETADO_CON_FALTANTES'
    REPETIR = 'REPETIR'

    def is_fallo(self) -> bool:
        return self in FALLOS

    def is_completado(self) -> bool:
        return self in COMPLETADOS or self.is_fallo()

    def is_terminada(self) -> bool:
        return self in TERMINADOS

    def is_repetir(self) -> bool:
        return self is Status.REPETIR


FALLOS: FrozenSet[Status] = frozenset({
    Status.FALLO_AUTENTICACION,
    Status.FALLO_500_MISMO_HORARIO,
    Status.FALLO,
})
COMPLETADOS: FrozenSet[Status] = frozenset({Status.COMPLETADO, Status.COMPLETADO_CON_FALTANTES})
TERMINADOS: FrozenSet[Status] = FALLOS | COMPLETADOS

TRANSICIONES: Dict[Status, FrozenSet[Status]] = {
    Status.EN_ESPERA: frozenset({
        Status.EN_PROCESO, Status.FALLO_AUTENTICACION, Status.FALLO, Status.REPETIR,
    }),
    Status.EN_PROCESO: frozenset({
        Status.DESCARGANDO, Status.FALLO_500_MISMO_HORARIO, Status.COMPLETADO,
        Status.FALLO_AUTENTICACION, Status.FALLO, Status.REPETIR,
    }),
    Status.DESCARGANDO: frozenset({
        Status.COMPLETADO, Status.COMPLETADO_CON_FALTANTES,
        Status.FALLO_AUTENTICACION, Status.FALLO, Status.REPETIR,
    }),
}


def _as_uuid(folio: FolioLike) -> Optional[uuid.UUID]:
    if isinstance(folio, uuid.UUID):
        return folio
    try:
        return uuid.UUID(str(folio).strip())
    except ValueError:
        return None


class Consulta:
    """Consulta realizada al portal CFDIMeta del SAT.

    Es un contenedor pasivo: el servicio de descarga que la creó avanza su
    status y publica resultados; cualquier otro hilo puede leerla al mismo
    tiempo. Las páginas se publican completas, nunca a medias.
    """

    def __init__(
        self,
        parametros: Parametros,
        tamano_pagina: int,
        folio: Optional[uuid.UUID] = None,
        xml_fetcher: Optional[XMLFetcher] = None,
    ) -> None:
        if tamano_pagina < 1:
            raise ValueError('tamano_pagina debe ser >= 1')
        self._parametros = parametros
        self._folio = folio or uuid.uuid4()
        self._tamano_pagina = tamano_pagina
        self._xml_fetcher = xml_fetcher
        self._lock = threading.RLock()
        self._status = Status.EN_ESPERA
        self._total: Optional[int] = None
        self._paginas_cargadas: Dict[int, Tuple[CFDIMeta, ...]] = {}
        self._por_folio: Dict[uuid.UUID, CFDIMeta] = {}
        self._xmls: Dict[uuid.UUID, str] = {}
        self._sin_xml: Set[uuid.UUID] = set()
        self._faltantes: Set[uuid.UUID] = set()

    def __repr__(self) -> str:
        return f'<Consulta folio={self._folio} status={self._status.value} total={self.total_resultados}>'

    # --- Lectura ---
    @property
    def parametros(self) -> Parametros:
        return self._parametros

    @property
    def folio(self) -> uuid.UUID:
        return self._folio

    @property
    def tamano_pagina(self) -> int:
        return self._tamano_pagina

    @property
    def status(self) -> Status:
        return self._status

    def is_terminada(self) -> bool:
        return self._status.is_terminada()

    def is_fallo(self) -> bool:
        return self._status.is_fallo()

    def is_completado(self) -> bool:
        return self._status.is_completado()

    def is_repetir(self) -> bool:
        return self._status.is_repetir()

    @property
    def total_resultados(self) -> int:
        """Total encontrado en el portal; 0 mientras no se conozca."""
        return self._total or 0

    @property
    def paginas(self) -> int:
        return math.ceil(self.total_resultados / self._tamano_pagina)

    def has_resultados(self) -> bool:
        with self._lock:
            return not self.is_repetir() and bool(self._paginas_cargadas)

    def get_resultados(self, pagina: int, factory: Optional[Callable[[CFDIMeta], T]] = None) -> List:
        """Devuelve los CFDIs de la página dada (base 1).

        Con `factory` cada elemento se transforma, p.ej. `MiModelo.from_meta`
        para obtener directamente objetos listos para persistir.
        """
        with self._lock:
            paginas = self.paginas
            if self.is_repetir():
                raise ResultadosInsuficientesError(
                    pagina, paginas, 'La consulta debe repetirse; sus resultados se descartaron')
            if pagina < 1 or pagina > paginas:
                raise ResultadosInsuficientesError(pagina, paginas)
            items = self._paginas_cargadas.get(pagina)
            if items is None:
                raise ResultadosInsuficientesError(
                    pagina, paginas, f'Página {pagina} aún no disponible (status {self._status.value})')
        if factory is None:
            return list(items)
        return [factory(item) for item in items]

    def get_cfdi(self, folio: FolioLike) -> Optional[CFDIMeta]:
        key = _as_uuid(folio)
        if key is None:
            return None
        with self._lock:
            return self._por_folio.get(key)

    def get_cfdi_xml(self, cfdi: Union[FolioLike, CFDIMetaLike]) -> Optional[str]:
        """Devuelve el XML del CFDI, o None si se sabe que no tiene XML.

        Lanza XMLNoEncontradoError cuando se esperaba un XML y no se obtuvo.
        """
        folio = cfdi.folio if isinstance(cfdi, CFDIMetaLike) else cfdi
        key = _as_uuid(folio)
        with self._lock:
            meta = self._por_folio.get(key) if key is not None else None
            if meta is None:
                raise XMLNoEncontradoError(folio, f'El CFDI {folio} no pertenece a la consulta {self._folio}')
            if key in self._xmls:
                return self._xmls[key]
            if key in self._sin_xml or not meta.tiene_xml():
                return None
            if key in self._faltantes:
                raise XMLNoEncontradoError(key)
            if self.is_terminada():
                raise XMLNoEncontradoError(
                    key, f'XML del CFDI {key} no disponible: la consulta terminó en {self._status.value}')
            fetcher = self._xml_fetcher
        if fetcher is None:
            raise XMLNoEncontradoError(key, f'XML del CFDI {key} aún no disponible')
        try:
            xml = fetcher(meta)
        except XMLNoEncontradoError:
            raise
        except Exception as e:
            logger.warning('No se pudo recuperar XML %s de la consulta %s: %s', key, self._folio, e)
            raise XMLNoEncontradoError(key) from e
        if xml is None:
            raise XMLNoEncontradoError(key)
        with self._lock:
            # la consulta pudo cerrarse o descartarse mientras se descargaba
            if key not in self._por_folio:
                raise XMLNoEncontradoError(key)
            if self.is_terminada():
                return self._xmls.get(key, xml)
            return self._xmls.setdefault(key, xml)

    # --- Escritura (sólo el servicio de descarga) ---
    def _check_mutable(self) -> None:
        if self.is_terminada() or self.is_repetir():
            raise TransicionInvalidaError(
                f'La consulta {self._folio} ya no admite cambios (status {self._status.value})')

    def actualizar_status(self, status: Status) -> None:
        status = Status(status)
        with self._lock:
            actual = self._status
            if status is actual:
                return
            if status not in TRANSICIONES.get(actual, frozenset()):
                raise TransicionInvalidaError(f'Transición inválida {actual.value} -> {status.value}')
            if status in COMPLETADOS:
                self._check_completa(status)
            self._status = status
            if status is Status.REPETIR:
                self._paginas_cargadas.clear()
                self._por_folio.clear()
                self._xmls.clear()
                self._sin_xml.clear()
                self._faltantes.clear()
        logger.info('Consulta %s: %s -> %s', self._folio, actual.value, status.value)

    def _check_completa(self, status: Status) -> None:
        if self._total is None:
            if self._status is Status.EN_PROCESO and status is Status.COMPLETADO:
                # El portal no encontró información: se completa sin resultados
                self._total = 0
                return
            raise TransicionInvalidaError('No se puede completar sin conocer el total de resultados')
        if self._status is Status.EN_PROCESO and self._total != 0:
            raise TransicionInvalidaError('Sólo una consulta sin resultados pasa de EN_PROCESO a COMPLETADO')
        pendientes = [p for p in range(1, self.paginas + 1) if p not in self._paginas_cargadas]
        if pendientes:
            raise TransicionInvalidaError(f'Faltan páginas por cargar: {pendientes}')
        if status is Status.COMPLETADO and self._faltantes:
            raise TransicionInvalidaError('Hay XMLs faltantes; usar COMPLETADO_CON_FALTANTES')
        if status is Status.COMPLETADO_CON_FALTANTES and not self._faltantes:
            raise TransicionInvalidaError('No hay XMLs faltantes; usar COMPLETADO')

    def set_total_resultados(self, total: int) -> None:
        if total < 0:
            raise ValueError('El total de resultados no puede ser negativo')
        with self._lock:
            self._check_mutable()
            if self._total is not None and self._total != total:
                raise ValueError(f'El total ya se fijó en {self._total}; no puede cambiar a {total}')
            self._total = total

    def agregar_pagina(self, numero: int, cfdis: Iterable[CFDIMeta]) -> None:
        """Publica una página completa de resultados."""
        items = tuple(cfdis)
        with self._lock:
            self._check_mutable()
            if self._status is not Status.DESCARGANDO:
                raise TransicionInvalidaError(
                    f'Sólo se agregan páginas en DESCARGANDO (status {self._status.value})')
            paginas = self.paginas
            if numero < 1 or numero > paginas:
                raise ResultadosInsuficientesError(numero, paginas)
            esperado = (self.total_resultados - (numero - 1) * self._tamano_pagina
                        if numero == paginas else self._tamano_pagina)
            if len(items) != esperado:
                raise ValueError(f'La página {numero} debe tener {esperado} CFDIs, se recibieron {len(items)}')
            previa = self._paginas_cargadas.get(numero)
            if previa is not None:
                if previa == items:
                    return
                raise ValueError(f'La página {numero} ya fue publicada con otro contenido')
            folios = [c.folio for c in items]
            if len(set(folios)) != len(folios) or any(f in self._por_folio for f in folios):
                raise ValueError(f'La página {numero} contiene folios repetidos')
            for c in items:
                self._por_folio[c.folio] = c
            self._paginas_cargadas[numero] = items
        logger.debug('Consulta %s: página %s/%s publicada', self._folio, numero, paginas)

    def _require_cfdi(self, folio: FolioLike) -> uuid.UUID:
        key = _as_uuid(folio)
        if key is None or key not in self._por_folio:
            raise KeyError(f'El CFDI {folio} no pertenece a la consulta {self._folio}')
        return key

    def registrar_xml(self, folio: FolioLike, xml: str) -> None:
        with self._lock:
            self._check_mutable()
            key = self._require_cfdi(folio)
            self._xmls[key] = xml
            self._faltantes.discard(key)

    def marcar_sin_xml(self, folio: FolioLike) -> None:
        """El documento legítimamente no tiene XML (p.ej. cancelado)."""
        with self._lock:
            self._check_mutable()
            self._sin_xml.add(self._require_cfdi(folio))

    def marcar_xml_faltante(self, folio: FolioLike) -> None:
        with self._lock:
            self._check_mutable()
            self._faltantes.add(self._require_cfdi(folio))

    def faltantes(self) -> List[uuid.UUID]:
        with self._lock:
            return sorted(self._faltantes, key=str)

    def pendientes_xml(self) -> List[CFDIMeta]:
        """CFDIs cargados cuyo XML no se ha resuelto todavía."""
        with self._lock:
            return [
                c for p in sorted(self._paginas_cargadas) for c in self._paginas_cargadas[p]
                if c.tiene_xml() and c.folio not in self._xmls
                and c.folio not in self._sin_xml and c.folio not in self._faltantes
            ]

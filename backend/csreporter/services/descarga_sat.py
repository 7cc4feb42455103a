import functools
import logging
import threading
import time
import uuid
from typing import Dict, List, Optional, Union
from ..config import get_settings
from .cfdi_meta import CFDIMeta
from .consulta import Consulta, Status, XMLNoEncontradoError
from .parametros import Parametros
from .portal import (
    CODIGO_SIN_INFORMACION,
    CODIGO_TOPE_MAXIMO,
    EstadoSolicitud,
    PortalAutenticacionError,
    PortalError,
    PortalSAT,
)

logger = logging.getLogger(__name__)


class DescargaSAT:
    """Servicio de descarga: crea consultas, las avanza contra el portal y las
    repite cuando el portal lo exige.

    Es el único escritor de las consultas que crea. Los fallos de una consulta
    completa quedan como status (nunca se lanzan) para poder inspeccionarlos
    después.
    """

    def __init__(
        self,
        portal: PortalSAT,
        tamano_pagina: Optional[int] = None,
        intervalo: Optional[float] = None,
        max_espera: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.portal = portal
        self.tamano_pagina = tamano_pagina or settings.tamano_pagina
        self.intervalo = settings.intervalo_polling if intervalo is None else intervalo
        self.max_espera = settings.max_espera if max_espera is None else max_espera
        self._consultas: Dict[uuid.UUID, Consulta] = {}
        self._solicitudes: Dict[uuid.UUID, str] = {}
        self._reemplazos: Dict[uuid.UUID, uuid.UUID] = {}
        self._lock = threading.RLock()

    def consultar(self, parametros: Parametros) -> Consulta:
        folio = uuid.uuid4()
        consulta = Consulta(
            parametros,
            self.tamano_pagina,
            folio=folio,
            xml_fetcher=functools.partial(self._recuperar_xml, folio),
        )
        with self._lock:
            self._consultas[folio] = consulta
            try:
                self._solicitudes[folio] = self.portal.solicitar(parametros)
            except PortalAutenticacionError as e:
                logger.error('Consulta %s: autenticación rechazada: %s', folio, e)
                consulta.actualizar_status(Status.FALLO_AUTENTICACION)
            except PortalError as e:
                logger.error('Consulta %s: solicitud rechazada: %s', folio, e)
                consulta.actualizar_status(Status.FALLO)
        logger.info('Consulta %s creada (%s, %s)', folio, parametros.rfc, parametros.tipo.value)
        return consulta

    def get_consulta(self, folio: Union[uuid.UUID, str]) -> Optional[Consulta]:
        try:
            key = folio if isinstance(folio, uuid.UUID) else uuid.UUID(str(folio))
        except ValueError:
            return None
        return self._consultas.get(key)

    def consultas(self) -> List[Consulta]:
        with self._lock:
            return list(self._consultas.values())

    def avanzar(self, consulta: Consulta) -> Status:
        """Un paso de polling sobre la consulta. Devuelve el status resultante."""
        with self._lock:
            if consulta.is_terminada() or consulta.is_repetir():
                return consulta.status
            try:
                if consulta.status is Status.EN_ESPERA:
                    consulta.actualizar_status(Status.EN_PROCESO)
                elif consulta.status is Status.EN_PROCESO:
                    self._verificar(consulta)
                elif consulta.status is Status.DESCARGANDO:
                    self._descargar_xmls(consulta)
            except PortalAutenticacionError as e:
                logger.error('Consulta %s: autenticación rechazada: %s', consulta.folio, e)
                self._cerrar(consulta, Status.FALLO_AUTENTICACION)
            except PortalError as e:
                logger.error('Consulta %s: error del portal: %s', consulta.folio, e)
                self._cerrar(consulta, Status.FALLO)
            except Exception:
                logger.exception('Consulta %s: error inesperado en status %s',
                                 consulta.folio, consulta.status.value)
                self._cerrar(consulta, Status.FALLO)
            if consulta.is_terminada() or consulta.is_repetir():
                self._liberar(consulta)
            return consulta.status

    def avanzar_pendientes(self) -> int:
        """Avanza todas las consultas no terminadas; devuelve cuántas se tocaron."""
        pendientes = [c for c in self.consultas() if not (c.is_terminada() or c.is_repetir())]
        for consulta in pendientes:
            try:
                self.avanzar(consulta)
            except Exception:
                logger.exception('Consulta %s: no se pudo avanzar', consulta.folio)
        return len(pendientes)

    def esperar(self, consulta: Consulta, intervalo: Optional[float] = None, timeout: Optional[float] = None) -> Status:
        """Hace polling hasta que la consulta termina o pide repetirse."""
        intervalo = self.intervalo if intervalo is None else intervalo
        timeout = self.max_espera if timeout is None else timeout
        start = time.monotonic()
        while True:
            status = self.avanzar(consulta)
            if status.is_terminada() or status.is_repetir():
                return status
            if time.monotonic() - start >= timeout:
                raise TimeoutError(f'Timeout esperando la consulta {consulta.folio} (status {status.value})')
            time.sleep(intervalo)

    def repetir(self, folio: Union[uuid.UUID, str], parametros: Optional[Parametros] = None) -> Consulta:
        """Genera la consulta que reemplaza a una marcada como REPETIR."""
        with self._lock:
            original = self.get_consulta(folio)
            if original is None:
                raise KeyError(f'Consulta {folio} no encontrada')
            if not original.is_repetir():
                raise ValueError(f'La consulta {folio} no requiere repetirse (status {original.status.value})')
            previo = self._reemplazos.get(original.folio)
            if previo is not None:
                return self._consultas[previo]
            nueva = self.consultar(parametros or original.parametros)
            self._reemplazos[original.folio] = nueva.folio
        logger.info('Consulta %s repetida como %s', original.folio, nueva.folio)
        return nueva

    def descartar(self, folio: Union[uuid.UUID, str]) -> bool:
        """Olvida una consulta terminada (o marcada para repetir).

        Devuelve False si el folio no se conoce. Lanza ValueError si la
        consulta sigue en curso.
        """
        with self._lock:
            consulta = self.get_consulta(folio)
            if consulta is None:
                return False
            if not (consulta.is_terminada() or consulta.is_repetir()):
                raise ValueError(f'La consulta {folio} sigue en curso (status {consulta.status.value})')
            self._liberar(consulta)
            del self._consultas[consulta.folio]
            self._reemplazos.pop(consulta.folio, None)
            for previo in [k for k, v in self._reemplazos.items() if v == consulta.folio]:
                del self._reemplazos[previo]
        logger.info('Consulta %s descartada', consulta.folio)
        return True

    def descartar_terminadas(self) -> int:
        """Descarta todas las consultas que ya no avanzan; devuelve cuántas."""
        with self._lock:
            folios = [c.folio for c in self._consultas.values() if c.is_terminada() or c.is_repetir()]
            for folio in folios:
                self.descartar(folio)
        return len(folios)

    # --- Internos ---
    def _verificar(self, consulta: Consulta) -> None:
        id_solicitud = self._solicitudes[consulta.folio]
        v = self.portal.verificar(id_solicitud)
        logger.debug('Consulta %s: estado=%s codigo=%s', consulta.folio, v.estado.name, v.codigo)
        if v.codigo == CODIGO_SIN_INFORMACION:
            consulta.set_total_resultados(0)
            consulta.actualizar_status(Status.COMPLETADO)
            return
        if v.codigo == CODIGO_TOPE_MAXIMO:
            logger.warning('Consulta %s: el portal excedió el tope de resultados; dividir el rango', consulta.folio)
            consulta.actualizar_status(Status.FALLO_500_MISMO_HORARIO)
            return
        if v.estado in (EstadoSolicitud.ACEPTADA, EstadoSolicitud.EN_PROCESO):
            return
        if v.estado is EstadoSolicitud.VENCIDA:
            consulta.actualizar_status(Status.REPETIR)
            return
        if v.estado is not EstadoSolicitud.TERMINADA:
            logger.error('Consulta %s: solicitud %s en estado %s (código %s): %s',
                         consulta.folio, id_solicitud, v.estado.name, v.codigo, v.mensaje)
            consulta.actualizar_status(Status.FALLO)
            return

        metas = self.portal.descargar_metadata(id_solicitud, v.paquetes)
        if v.total is not None and v.total != len(metas):
            logger.warning('Consulta %s: el SAT reportó %s CFDIs pero se descargaron %s',
                           consulta.folio, v.total, len(metas))
        self._publicar(consulta, metas)

    def _publicar(self, consulta: Consulta, metas: List[CFDIMeta]) -> None:
        unicos: Dict[uuid.UUID, CFDIMeta] = {}
        for cfdi in metas:
            unicos.setdefault(cfdi.folio, cfdi)
        if len(unicos) != len(metas):
            logger.warning('Consulta %s: el portal repitió %s folios; se conserva la primera aparición',
                           consulta.folio, len(metas) - len(unicos))
        ordenados = sorted(unicos.values(), key=lambda c: (c.fecha_emision, str(c.folio)))
        size = consulta.tamano_pagina
        paginas = [ordenados[i:i + size] for i in range(0, len(ordenados), size)]

        consulta.set_total_resultados(len(ordenados))
        if not ordenados:
            consulta.actualizar_status(Status.COMPLETADO)
            return
        consulta.actualizar_status(Status.DESCARGANDO)
        for numero, pagina in enumerate(paginas, start=1):
            consulta.agregar_pagina(numero, pagina)
        for cfdi in ordenados:
            if not cfdi.tiene_xml():
                consulta.marcar_sin_xml(cfdi.folio)

    def _descargar_xmls(self, consulta: Consulta) -> None:
        id_solicitud = self._solicitudes[consulta.folio]
        for cfdi in consulta.pendientes_xml():
            try:
                xml = self.portal.descargar_xml(id_solicitud, cfdi)
            except PortalAutenticacionError:
                raise
            except PortalError as e:
                logger.warning('Consulta %s: no se pudo descargar XML %s: %s', consulta.folio, cfdi.folio, e)
                xml = None
            if xml:
                consulta.registrar_xml(cfdi.folio, xml)
            else:
                consulta.marcar_xml_faltante(cfdi.folio)
        if consulta.faltantes():
            consulta.actualizar_status(Status.COMPLETADO_CON_FALTANTES)
        else:
            consulta.actualizar_status(Status.COMPLETADO)

    def _cerrar(self, consulta: Consulta, status: Status) -> None:
        if not (consulta.is_terminada() or consulta.is_repetir()):
            consulta.actualizar_status(status)

    def _liberar(self, consulta: Consulta) -> None:
        id_solicitud = self._solicitudes.pop(consulta.folio, None)
        if id_solicitud is not None:
            self.portal.liberar(id_solicitud)

    def _recuperar_xml(self, folio: uuid.UUID, cfdi: CFDIMeta) -> Optional[str]:
        id_solicitud = self._solicitudes.get(folio)
        if id_solicitud is None:
            raise XMLNoEncontradoError(cfdi.folio)
        return self.portal.descargar_xml(id_solicitud, cfdi)

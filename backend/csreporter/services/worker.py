# El "worker": avanza las consultas pendientes del servicio de descarga en
# segundo plano, independiente de quien las esté leyendo.

import logging
import os
import threading
import time
from pathlib import Path
from typing import Optional
from ..config import configure_logging, get_settings
from .consulta import Consulta
from .descarga_sat import DescargaSAT
from .parametros import Parametros
from .satcfdi_adapter import SatCfdiPortal

logger = logging.getLogger(__name__)

VARIABLES_REQUERIDAS = ('SAT_CER_PATH', 'SAT_KEY_PATH', 'SAT_RFC', 'SAT_FECHA_INICIAL', 'SAT_FECHA_FINAL')


class Worker:
    def __init__(self, servicio: DescargaSAT, intervalo: Optional[float] = None) -> None:
        self.servicio = servicio
        self.intervalo = get_settings().intervalo_polling if intervalo is None else intervalo
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> int:
        """Una pasada sobre las consultas pendientes. Nunca lanza."""
        try:
            n = self.servicio.avanzar_pendientes()
        except Exception:
            logger.exception('Error en el ciclo del worker')
            return 0
        if n:
            logger.debug('Worker: %s consultas avanzadas', n)
        return n

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        stop = stop_event or self._stop
        logger.info('Iniciando worker (intervalo=%ss)', self.intervalo)
        while not stop.is_set():
            self.run_once()
            stop.wait(self.intervalo)
        logger.info('Worker detenido')

    def start(self) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name='csreporter-worker', daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


def main() -> Consulta:
    """
    Solicita la consulta descrita en el entorno y la avanza con un worker
    hasta que termina, pide repetirse o se agota SAT_MAX_WAIT.

    La contraseña de la e.firma se lee de DEFAULT_EFIRMA_PASSPHRASE.
    """
    configure_logging()
    faltan = [name for name in VARIABLES_REQUERIDAS if not os.environ.get(name)]
    if faltan:
        raise SystemExit(f'Faltan variables de entorno: {", ".join(faltan)}')

    portal = SatCfdiPortal.desde_efirma(
        Path(os.environ['SAT_CER_PATH']).read_bytes(),
        Path(os.environ['SAT_KEY_PATH']).read_bytes(),
        os.environ.get('DEFAULT_EFIRMA_PASSPHRASE'),
    )
    servicio = DescargaSAT(portal)
    parametros = Parametros(
        rfc=os.environ['SAT_RFC'],
        fecha_inicial=os.environ['SAT_FECHA_INICIAL'],
        fecha_final=os.environ['SAT_FECHA_FINAL'],
        tipo=os.environ.get('SAT_KIND', 'recibidos'),
    )
    consulta = servicio.consultar(parametros)

    worker = Worker(servicio)
    worker.start()
    limite = time.monotonic() + servicio.max_espera
    try:
        while not (consulta.is_terminada() or consulta.is_repetir()):
            if time.monotonic() >= limite:
                logger.error('Consulta %s sin terminar tras %ss', consulta.folio, servicio.max_espera)
                break
            time.sleep(max(worker.intervalo, 0.01))
    except KeyboardInterrupt:
        logger.info('Interrumpido por el usuario')
    finally:
        worker.stop()

    logger.info('Consulta %s: %s, %s CFDIs, %s XMLs faltantes',
                consulta.folio, consulta.status.value, consulta.total_resultados, len(consulta.faltantes()))
    return consulta


if __name__ == "__main__":
    main()

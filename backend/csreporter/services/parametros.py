from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from ..utils.rfc import validate_rfc


class SatKind(str, Enum):
    recibidos = 'recibidos'
    emitidos = 'emitidos'


class StatusCFDI(str, Enum):
    TODOS = 'TODOS'
    VIGENTE = 'VIGENTE'
    CANCELADO = 'CANCELADO'


class Parametros(BaseModel):
    """Descripción inmutable de lo que se solicita al portal.

    Una vez creada la Consulta, sus parámetros no cambian. Para reintentar con
    otro rango se crean parámetros nuevos (ver `dividir` y `con_rango`).
    """
    model_config = ConfigDict(frozen=True)

    rfc: str
    fecha_inicial: datetime
    fecha_final: datetime
    tipo: SatKind = SatKind.recibidos
    status: StatusCFDI = StatusCFDI.TODOS
    rfc_busqueda: Optional[str] = None

    @field_validator('rfc')
    @classmethod
    def validate_rfc_field(cls, v):
        return validate_rfc(v)

    @field_validator('rfc_busqueda')
    @classmethod
    def validate_rfc_busqueda(cls, v):
        if v is None or not str(v).strip():
            return None
        return validate_rfc(v)

    @model_validator(mode='after')
    def validate_rango(self):
        if self.fecha_inicial > self.fecha_final:
            raise ValueError('fecha_inicial debe ser anterior o igual a fecha_final')
        return self

    def con_rango(self, fecha_inicial: datetime, fecha_final: datetime) -> 'Parametros':
        return Parametros(
            rfc=self.rfc,
            fecha_inicial=fecha_inicial,
            fecha_final=fecha_final,
            tipo=self.tipo,
            status=self.status,
            rfc_busqueda=self.rfc_busqueda,
        )

    def dividir(self, partes: int = 2) -> List['Parametros']:
        """Divide el rango de fechas en `partes` ventanas consecutivas.

        Es la salida ante FALLO_500_MISMO_HORARIO: el portal no distingue más
        de 500 resultados en el mismo minuto, así que se consulta por ventanas
        más angostas. La granularidad mínima es un minuto.
        """
        if partes < 2:
            raise ValueError('partes debe ser >= 2')
        minutos = int((self.fecha_final - self.fecha_inicial).total_seconds() // 60)
        paso = minutos // partes
        if paso < 1:
            raise ValueError(
                f'El rango {self.fecha_inicial.isoformat()} - {self.fecha_final.isoformat()} '
                f'es demasiado angosto para dividirse en {partes} partes'
            )
        inicios = [self.fecha_inicial + timedelta(minutes=paso * i) for i in range(partes)]
        out: List[Parametros] = []
        for i, inicio in enumerate(inicios):
            fin = inicios[i + 1] - timedelta(seconds=1) if i + 1 < partes else self.fecha_final
            out.append(self.con_rango(inicio, fin))
        return out

import re
from datetime import datetime
from typing import NamedTuple, Optional

# Persona moral: 3 letras/&/Ñ + fecha YYMMDD + homoclave (12)
# Persona física: 4 letras/&/Ñ + fecha YYMMDD + homoclave (13)
_RFC_RE = re.compile(r'^([A-Z&Ñ]{3,4})(\d{6})([A-Z0-9]{3})$')

# RFC genéricos que el SAT admite sin fecha real
RFC_GENERICOS = frozenset({'XAXX010101000', 'XEXX010101000'})


class RfcInfo(NamedTuple):
    valid: bool
    normalized: Optional[str]
    persona_moral: Optional[bool]
    error: Optional[str]


def normalize_rfc(rfc: Optional[str]) -> str:
    return (rfc or '').strip().upper()


def _fecha_valida(frag: str) -> bool:
    """Valida YYMMDD con el siglo inferido como lo hace el SAT."""
    yy, mm, dd = int(frag[0:2]), int(frag[2:4]), int(frag[4:6])
    now = datetime.now()
    year = 1900 + yy if yy > now.year % 100 else 2000 + yy
    try:
        datetime(year, mm, dd)
    except ValueError:
        return False
    return year >= 1930


def classify_rfc(rfc: Optional[str]) -> RfcInfo:
    value = normalize_rfc(rfc)
    if not value:
        return RfcInfo(False, None, None, 'vacío')
    if value in RFC_GENERICOS:
        return RfcInfo(True, value, False, None)
    m = _RFC_RE.match(value)
    if not m:
        return RfcInfo(False, value, None, 'patrón inválido')
    if not _fecha_valida(m.group(2)):
        return RfcInfo(False, value, None, 'fecha inválida')
    return RfcInfo(True, value, len(value) == 12, None)


def validate_rfc(rfc: Optional[str]) -> str:
    """Devuelve el RFC normalizado o lanza ValueError con el motivo."""
    info = classify_rfc(rfc)
    if not info.valid:
        raise ValueError(f'RFC inválido ({info.error}): {rfc!r}')
    return info.normalized  # type: ignore[return-value]


__all__ = ['RfcInfo', 'RFC_GENERICOS', 'classify_rfc', 'normalize_rfc', 'validate_rfc']

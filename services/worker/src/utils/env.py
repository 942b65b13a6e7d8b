import os
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

from pydantic import ValidationError, create_model

from . import log

logger = log.get_logger(__name__)


@dataclass(frozen=True)
class EnvVarSpec:
    """Declaration of one environment variable.

    ``parse`` turns the raw string into its typed value; ``type`` is the
    pydantic field definition the parsed value is validated against.
    """

    id: str
    default: Optional[str] = None
    parse: Optional[Callable[[str], Any]] = None
    type: Tuple[Any, Any] = (str, ...)
    is_optional: bool = False
    is_secret: bool = False


def parse(var: EnvVarSpec) -> Any:
    value = os.environ.get(var.id, var.default)
    if value is None:
        return None
    if var.parse is not None:
        return var.parse(value)
    return value


def validate(vars: List[EnvVarSpec]) -> bool:
    """Parse and type-check every variable, logging each problem found."""
    fields = {}
    values = {}
    errors = 0
    for var in vars:
        raw = os.environ.get(var.id, var.default)
        if raw is None:
            if not var.is_optional:
                logger.error(f"Missing required environment variable {var.id}")
                errors += 1
            continue
        try:
            values[var.id] = parse(var)
        except (TypeError, ValueError) as e:
            shown = "***" if var.is_secret else raw
            logger.error(f"Invalid value for environment variable {var.id}={shown!r}: {e}")
            errors += 1
            continue
        fields[var.id] = var.type

    if errors:
        return False

    model = create_model("EnvVars", **fields)
    try:
        model(**values)
    except ValidationError as e:
        for err in e.errors():
            logger.error(f"Invalid environment variable {err['loc'][0]}: {err['msg']}")
        return False
    return True

# All application routes are in v1/
from . import v1 as v1

__all__ = ["v1"]

import logging

from .errors import *
from .instance import Instance
from .options import CanonicalOptions
from .registry import ExportFunction, ExportRegistry
from .runtime import BytearrayMemory, GuestInstance, GuestMemory, Trap
from .schema import load_functions, parse_type
from .valtypes import *

logging.getLogger(__name__).addHandler(logging.NullHandler())

import logging

from .errors import AllocationFailure
from .runtime import Trap

logger = logging.getLogger(__name__)

class Allocator:
  """Obtains write space in guest memory through the guest's reallocator.

  Buffers handed out here belong to the guest from the moment they are
  returned; the host only writes into them and never frees them.
  """

  def __init__(self, realloc, name):
    self.realloc = realloc
    self.name = name

  def allocate(self, old_ptr, old_size, alignment, new_size) -> int:
    if self.realloc is None:
      raise AllocationFailure("module does not export reallocator {!r}".format(self.name))
    try:
      results = self.realloc(old_ptr, old_size, alignment, new_size)
    except Trap as e:
      raise AllocationFailure("reallocator {!r} trapped: {}".format(self.name, e)) from e
    if len(results) != 1 or type(results[0]) is not int:
      raise AllocationFailure("reallocator {!r} returned {!r}".format(self.name, results))
    ptr = results[0] % (1 << 32)
    logger.debug("%s(%d, %d, %d, %d) -> %d", self.name, old_ptr, old_size, alignment, new_size, ptr)
    return ptr

from functools import partial

from .dispatch import Dispatcher
from .memory import MemoryAccessor
from .options import CanonicalOptions
from .registry import ExportRegistry

class Instance:
  """A loaded guest together with the exports it was validated against.

  Calls on one Instance are serialized; separate Instances share nothing and
  may be driven from separate threads.
  """

  def __init__(self, guest, functions, opts = None):
    self.opts = opts or CanonicalOptions()
    self.guest = guest
    self.memory = MemoryAccessor(guest.memory)
    self.registry = ExportRegistry(guest, functions, self.opts)
    self.dispatcher = Dispatcher(guest, self.memory, self.opts)

  def call(self, name, *args):
    fn = self.registry.resolve(name)
    return self.dispatcher.call(fn, args)

  def export(self, name):
    self.registry.resolve(name)
    return partial(self.call, name)

  @property
  def poisoned(self):
    return self.dispatcher.poisoned
